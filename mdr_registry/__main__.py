"""
Entry point: python3 -m mdr_registry --db ./mdr.sqlite <command> ...
"""
from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from pathlib import Path
from typing import Any

from mdr_registry.catalog import CURRENT, AsOf
from mdr_registry.config import RegistryConfig, configure_logging
from mdr_registry.diagnostics import run_diagnostics
from mdr_registry.errors import RegistryError, ValidationError
from mdr_registry.models import Direction, ItemVariant, Role
from mdr_registry.notify import LoggingSink
from mdr_registry.services import RegistryServices


def _dump(obj: Any) -> None:
    if dataclasses.is_dataclass(obj):
        obj = dataclasses.asdict(obj)
    elif isinstance(obj, list):
        obj = [dataclasses.asdict(o) if dataclasses.is_dataclass(o) else o for o in obj]
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


def _attrs(args) -> dict[str, Any]:
    if getattr(args, "attrs_file", None):
        return json.loads(Path(args.attrs_file).read_text(encoding="utf-8"))
    return json.loads(args.attrs or "{}")


def build_parser(config: RegistryConfig) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="mdr_registry", description="Metadata registry governance core")
    p.add_argument("--db", default=config.db_path, help="Path to the SQLite database")
    p.add_argument("--log-level", default=config.log_level)
    p.add_argument("--enforce-roles", action="store_true", default=config.enforce_roles,
                   help="Check every call against the role directory")
    p.add_argument("--actor", default=None, help="Principal performing the operation")
    sub = p.add_subparsers(dest="command", required=True)

    c = sub.add_parser("create", help="Create a registry item (status Candidate)")
    c.add_argument("variant", choices=[v.value for v in ItemVariant])
    c.add_argument("--attrs", help="Attributes as a JSON object")
    c.add_argument("--attrs-file")

    c = sub.add_parser("revise", help="Create a new version of an item")
    c.add_argument("item_id")
    c.add_argument("--base", type=int, required=True, help="Version the new attributes build on")
    c.add_argument("--attrs")
    c.add_argument("--attrs-file")
    c.add_argument("--note")

    c = sub.add_parser("show", help="Show a version of an item")
    c.add_argument("item_id")
    g = c.add_mutually_exclusive_group()
    g.add_argument("--version", type=int)
    g.add_argument("--as-of", help="ISO-8601 UTC timestamp")

    c = sub.add_parser("history", help="List every version of an item")
    c.add_argument("item_id")

    c = sub.add_parser("delete", help="Hard-delete a Candidate item")
    c.add_argument("item_id")

    c = sub.add_parser("request", help="Request a registration status transition")
    c.add_argument("item_id")
    c.add_argument("target_status")

    for name, choices in (("authority", ["Approved", "Rejected", "Escalate"]), ("committee", ["Approved", "Rejected"])):
        c = sub.add_parser(name, help=f"Record a {name} decision")
        c.add_argument("request_id")
        c.add_argument("decision", choices=choices)
        c.add_argument("--rationale")

    c = sub.add_parser("consult", help="Ask advisory commissions for opinions")
    c.add_argument("request_id")
    c.add_argument("commissions", nargs="+")

    c = sub.add_parser("opinion", help="Submit or change an advisory opinion")
    c.add_argument("request_id")
    c.add_argument("commission_id")
    c.add_argument("member_id")
    c.add_argument("opinion", choices=["Favorable", "Unfavorable", "Abstain"])
    c.add_argument("--comment")

    c = sub.add_parser("withdraw", help="Withdraw a request before committee review")
    c.add_argument("request_id")

    c = sub.add_parser("request-info", help="Show a request with its opinions and history")
    c.add_argument("request_id")

    c = sub.add_parser("relate", help="Add a relationship")
    c.add_argument("source_id")
    c.add_argument("target_id")
    c.add_argument("--attrs")
    c.add_argument("--attrs-file")

    c = sub.add_parser("unrelate", help="Remove a relationship")
    c.add_argument("relationship_id")

    c = sub.add_parser("relations", help="List relationships of an item")
    c.add_argument("item_id")
    c.add_argument("--incoming", action="store_true")

    c = sub.add_parser("assign-role", help="Grant a role to a principal")
    c.add_argument("principal")
    c.add_argument("role", choices=[r.value for r in Role])
    c.add_argument("--commission")

    c = sub.add_parser("revoke-role", help="Revoke a role from a principal")
    c.add_argument("principal")
    c.add_argument("role", choices=[r.value for r in Role])
    c.add_argument("--commission")

    sub.add_parser("diagnose", help="Run self-checks against the database")
    return p


def run(args, svc: RegistryServices) -> None:
    cmd = args.command
    actor = args.actor

    if cmd == "create":
        item_id, version = svc.create_item(args.variant, _attrs(args), actor)
        _dump({"item_id": item_id, "version": version})
    elif cmd == "revise":
        _dump({"item_id": args.item_id, "version": svc.revise_item(args.item_id, args.base, _attrs(args), actor, args.note)})
    elif cmd == "show":
        selector = args.version if args.version is not None else (AsOf.at(args.as_of) if args.as_of else CURRENT)
        _dump(svc.get_item(args.item_id, selector))
    elif cmd == "history":
        _dump(svc.list_versions(args.item_id))
    elif cmd == "delete":
        svc.delete_item(args.item_id, actor)
        print(f"OK: deleted {args.item_id}")
    elif cmd == "request":
        _dump({"request_id": svc.request_transition(args.item_id, args.target_status, actor)})
    elif cmd == "authority":
        _dump(svc.record_authority_decision(args.request_id, args.decision, args.rationale, actor))
    elif cmd == "committee":
        _dump(svc.record_committee_decision(args.request_id, args.decision, args.rationale, actor))
    elif cmd == "consult":
        _dump(svc.request_advisory_opinions(args.request_id, args.commissions, actor))
    elif cmd == "opinion":
        _dump(svc.submit_advisory_opinion(args.request_id, args.commission_id, args.member_id, args.opinion, args.comment))
    elif cmd == "withdraw":
        _dump(svc.withdraw_request(args.request_id, actor))
    elif cmd == "request-info":
        _dump({
            "request": dataclasses.asdict(svc.get_request(args.request_id)),
            "opinions": [dataclasses.asdict(o) for o in svc.list_opinions(args.request_id)],
            "history": [dataclasses.asdict(e) for e in svc.request_history(args.request_id)],
        })
    elif cmd == "relate":
        _dump({"relationship_id": svc.add_relationship(args.source_id, args.target_id, _attrs(args), actor)})
    elif cmd == "unrelate":
        svc.remove_relationship(args.relationship_id, actor)
        print(f"OK: removed {args.relationship_id}")
    elif cmd == "relations":
        direction = Direction.INCOMING if args.incoming else Direction.OUTGOING
        _dump(list(svc.relationships_of(args.item_id, direction)))
    elif cmd == "assign-role":
        _dump(svc.assign_role(args.principal, args.role, args.commission, granted_by=actor))
    elif cmd == "revoke-role":
        svc.revoke_role(args.principal, args.role, args.commission)
        print(f"OK: revoked {args.role} from {args.principal}")


def main(argv: list[str] | None = None) -> int:
    config = RegistryConfig.from_env()
    args = build_parser(config).parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "diagnose":
        diag = run_diagnostics(args.db)
        for line in diag.lines:
            print(line)
        return 0 if diag.ok else 2

    config = config.with_overrides(db_path=args.db, enforce_roles=args.enforce_roles)
    svc = RegistryServices.from_config(config, sink=LoggingSink())
    try:
        run(args, svc)
    except ValidationError as e:
        raise SystemExit("ERROR: invalid input:\n" + "\n".join(f"  - {fe}" for fe in e.errors))
    except RegistryError as e:
        raise SystemExit(f"ERROR: {e}")
    except json.JSONDecodeError as e:
        raise SystemExit(f"ERROR: attributes are not valid JSON: {e}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
