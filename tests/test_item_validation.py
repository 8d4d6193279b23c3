import unittest

from mdr_registry.attributes import AttributeDefinition, AttributeSchema
from mdr_registry.errors import ValidationError
from mdr_registry.models import DataType, ItemVariant, RegistrationStatus, Version
from mdr_registry.validation import designated_type, validate, validate_relationship, value_matches_type

COLOR_VD = {
    "name": "Color codes",
    "kind": "Enumerated",
    "values": [{"code": "RED", "meaning": "Red"}, {"code": "BLU", "meaning": "Blue"}],
}


def _current(item_id: str, variant: ItemVariant, attributes: dict) -> Version:
    return Version(
        item_id=item_id,
        version=1,
        variant=variant,
        created_at="2024-01-01T00:00:00.000000Z",
        modified_at="2024-01-01T00:00:00.000000Z",
        status=RegistrationStatus.CANDIDATE,
        requested_status=None,
        attributes=attributes,
    )


def _resolver(items: dict):
    return lambda item_id: items.get(item_id)


class TestCommonAttributes(unittest.TestCase):
    def test_name_is_required(self):
        with self.assertRaises(ValidationError) as ctx:
            validate("DataSetDefinition", {"name": "  "})
        self.assertEqual(ctx.exception.fields, ["name"])

    def test_reports_every_failing_field(self):
        with self.assertRaises(ValidationError) as ctx:
            validate("DataSetDefinition", {
                "tags": "not-a-list",
                "visibility": "Secret",
                "colour": "blue",
            })
        self.assertEqual(set(ctx.exception.fields), {"colour", "name", "tags", "visibility"})

    def test_tags_become_a_sorted_set(self):
        out = validate("DataSetDefinition", {"name": "Personnel", "tags": ["hr", "core", "hr"]})
        self.assertEqual(out["tags"], ["core", "hr"])

    def test_visibility_defaults_to_public(self):
        self.assertEqual(validate("DataSetDefinition", {"name": "Personnel"})["visibility"], "Public")
        out = validate("DataSetDefinition", {"name": "Personnel", "visibility": "RestrictedCatalog"})
        self.assertEqual(out["visibility"], "RestrictedCatalog")

    def test_definition_required_when_leaving_candidate(self):
        validate("DataSetDefinition", {"name": "Personnel"})
        with self.assertRaises(ValidationError) as ctx:
            validate("DataSetDefinition", {"name": "Personnel"}, leaving_candidate=True)
        self.assertEqual(ctx.exception.fields, ["definition"])

    def test_alternate_definitions(self):
        out = validate("DataSetDefinition", {
            "name": "Personnel",
            "alternate_definitions": [{"language": "fr", "name": "Personnel", "definition": "Les employes"}],
        })
        self.assertEqual(out["alternate_definitions"][0]["acceptability"], "Accepted")

        with self.assertRaises(ValidationError) as ctx:
            validate("DataSetDefinition", {
                "name": "Personnel",
                "alternate_definitions": [{"language": "fr", "acceptability": "Maybe"}],
            })
        self.assertIn("alternate_definitions[0]", ctx.exception.fields)
        self.assertIn("alternate_definitions[0].acceptability", ctx.exception.fields)

    def test_unknown_variant(self):
        with self.assertRaises(ValidationError) as ctx:
            validate("Concept", {"name": "X"})
        self.assertEqual(ctx.exception.fields, ["variant"])


class TestValueDomains(unittest.TestCase):
    def test_enumerated_defaults_to_code_storage(self):
        out = validate("ValueDomain", COLOR_VD)
        self.assertEqual(out["storage_column"], "code")
        self.assertEqual(designated_type(out), DataType.STRING)

    def test_enumerated_with_typed_storage_column(self):
        out = validate("ValueDomain", {
            "name": "Severity",
            "kind": "Enumerated",
            "ordered": True,
            "columns": [{"name": "rank", "data_type": "integer"}],
            "storage_column": "rank",
            "values": [
                {"code": "LOW", "meaning": "Low", "extra": {"rank": 1}},
                {"code": "HIGH", "meaning": "High", "extra": {"rank": 3}},
            ],
        })
        self.assertEqual(designated_type(out), DataType.INTEGER)

    def test_enumerated_value_problems(self):
        with self.assertRaises(ValidationError) as ctx:
            validate("ValueDomain", {
                "name": "Severity",
                "kind": "Enumerated",
                "columns": [{"name": "rank", "data_type": "integer"}, {"name": "meaning", "data_type": "string"}],
                "storage_column": "rank",
                "values": [
                    {"code": "LOW", "extra": {"rank": "one"}},
                    {"code": "LOW", "extra": {"rank": 2, "weight": 5}},
                    {"meaning": "Nothing"},
                ],
            })
        fields = set(ctx.exception.fields)
        self.assertIn("columns[1].name", fields)
        self.assertIn("values[0].extra.rank", fields)
        self.assertIn("values[1].code", fields)
        self.assertIn("values[1].extra.weight", fields)
        self.assertIn("values[2].code", fields)
        self.assertIn("values[2].extra.rank", fields)

    def test_described_needs_descriptions_and_type(self):
        out = validate("ValueDomain", {
            "name": "Age in years",
            "kind": "Described",
            "descriptions": ["Whole years since birth"],
            "data_type": "integer",
        })
        self.assertEqual(designated_type(out), DataType.INTEGER)

        incomplete = {"name": "Age", "kind": "Described", "values": []}
        with self.assertRaises(ValidationError) as ctx:
            validate("ValueDomain", incomplete)
        self.assertEqual(ctx.exception.fields, ["values"])
        with self.assertRaises(ValidationError) as ctx:
            validate("ValueDomain", incomplete, leaving_candidate=True)
        self.assertEqual(set(ctx.exception.fields), {"definition", "descriptions", "data_type", "values"})

    def test_candidate_value_domain_needs_only_a_name(self):
        out = validate("ValueDomain", {"name": "Colors"})
        self.assertEqual(out, {"name": "Colors", "visibility": "Public"})
        self.assertIsNone(designated_type(out))

        with self.assertRaises(ValidationError) as ctx:
            validate("ValueDomain", {"name": "Colors", "definition": "Paint colors"}, leaving_candidate=True)
        self.assertEqual(ctx.exception.fields, ["kind"])
        with self.assertRaises(ValidationError) as ctx:
            validate("ValueDomain", {"name": "Colors", "values": []})
        self.assertEqual(ctx.exception.fields, ["values"])

    def test_enumerated_values_required_when_leaving_candidate(self):
        attrs = {"name": "Colors", "definition": "Paint colors", "kind": "Enumerated"}
        self.assertEqual(validate("ValueDomain", attrs)["storage_column"], "code")
        with self.assertRaises(ValidationError) as ctx:
            validate("ValueDomain", attrs, leaving_candidate=True)
        self.assertEqual(ctx.exception.fields, ["values"])

    def test_value_matches_type(self):
        self.assertTrue(value_matches_type(DataType.INTEGER, 3))
        self.assertFalse(value_matches_type(DataType.INTEGER, True))
        self.assertTrue(value_matches_type(DataType.DECIMAL, "1.50"))
        self.assertFalse(value_matches_type(DataType.DECIMAL, "abc"))
        self.assertTrue(value_matches_type(DataType.DATE, "2024-02-29"))
        self.assertFalse(value_matches_type(DataType.DATE, "2023-02-29"))


class TestDataElements(unittest.TestCase):
    def setUp(self) -> None:
        self.items = {
            "vd-color": _current("vd-color", ItemVariant.VALUE_DOMAIN, validate("ValueDomain", COLOR_VD)),
            "dsd-1": _current("dsd-1", ItemVariant.DATA_SET_DEFINITION, {"name": "Personnel"}),
        }

    def _de(self, **overrides):
        attrs = {
            "name": "AutomobileColor",
            "definition": "The color of an automobile",
            "object_class": "Automobile",
            "property": "Color",
            "value_domain_id": "vd-color",
            "data_type": "string",
        }
        attrs.update(overrides)
        return attrs

    def test_matching_value_domain(self):
        out = validate("DataElement", self._de(), resolve=_resolver(self.items))
        self.assertEqual(out["value_domain_id"], "vd-color")

    def test_type_must_match_value_domain_storage(self):
        with self.assertRaises(ValidationError) as ctx:
            validate("DataElement", self._de(data_type="integer"), resolve=_resolver(self.items))
        self.assertEqual(ctx.exception.fields, ["data_type"])

    def test_value_domain_reference_must_resolve_to_a_value_domain(self):
        with self.assertRaises(ValidationError) as ctx:
            validate("DataElement", self._de(value_domain_id="vd-nope"), resolve=_resolver(self.items))
        self.assertEqual(ctx.exception.fields, ["value_domain_id"])
        with self.assertRaises(ValidationError):
            validate("DataElement", self._de(value_domain_id="dsd-1"), resolve=_resolver(self.items))

    def test_several_problems_at_once(self):
        with self.assertRaises(ValidationError) as ctx:
            validate("DataElement", {"name": "Broken", "data_type": "text", "max_size": 0})
        self.assertEqual(set(ctx.exception.fields), {"data_type", "max_size"})

    def test_candidate_data_element_needs_only_a_name(self):
        out = validate("DataElement", {"name": "AutomobileColor"}, resolve=_resolver(self.items))
        self.assertEqual(out, {"name": "AutomobileColor", "visibility": "Public"})

        with self.assertRaises(ValidationError) as ctx:
            validate("DataElement", {"name": "AutomobileColor", "definition": "Color of a car"},
                     resolve=_resolver(self.items), leaving_candidate=True)
        self.assertEqual(
            set(ctx.exception.fields),
            {"data_type", "value_domain_id", "object_class", "property"},
        )

    def test_object_class_and_property_needed_to_leave_candidate(self):
        attrs = self._de()
        del attrs["object_class"]
        del attrs["property"]
        validate("DataElement", attrs, resolve=_resolver(self.items))
        with self.assertRaises(ValidationError) as ctx:
            validate("DataElement", attrs, resolve=_resolver(self.items), leaving_candidate=True)
        self.assertEqual(set(ctx.exception.fields), {"object_class", "property"})


class TestAttributeSchema(unittest.TestCase):
    def setUp(self) -> None:
        self.schema = AttributeSchema()
        self.schema.define(AttributeDefinition("steward", "string", ("DataSetDefinition",), required=True))
        self.schema.define(AttributeDefinition("review_due", "date"))

    def test_declared_attributes_are_typed(self):
        out = validate("DataSetDefinition", {
            "name": "Personnel",
            "attributes": {"steward": "HR office", "review_due": "2025-06-30"},
        }, schema=self.schema)
        self.assertEqual(out["attributes"]["steward"], "HR office")

        with self.assertRaises(ValidationError) as ctx:
            validate("DataSetDefinition", {
                "name": "Personnel",
                "attributes": {"review_due": "soon", "owner": "me"},
            }, schema=self.schema)
        self.assertEqual(
            set(ctx.exception.fields),
            {"attributes.review_due", "attributes.owner", "attributes.steward"},
        )

    def test_scope_limits_where_attributes_apply(self):
        with self.assertRaises(ValidationError) as ctx:
            validate("ValueDomain", dict(COLOR_VD, attributes={"steward": "x"}), schema=self.schema)
        self.assertEqual(ctx.exception.fields, ["attributes.steward"])

    def test_unknown_value_type_is_refused(self):
        with self.assertRaises(ValueError):
            self.schema.define(AttributeDefinition("blob", "binary"))


class TestRelationshipAttributes(unittest.TestCase):
    def setUp(self) -> None:
        self.dsd = _current("dsd-1", ItemVariant.DATA_SET_DEFINITION, {"name": "Personnel"})
        self.de = _current("de-1", ItemVariant.DATA_ELEMENT, {"name": "Age"})

    def test_conditional_needs_condition(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_relationship(
                {"name": "has", "definition": "d", "obligation": "Conditional", "cardinality": "Single"},
                self.dsd, self.de, source_id="dsd-1", target_id="de-1",
            )
        self.assertEqual(ctx.exception.fields, ["condition"])

    def test_endpoints_and_missing_fields(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_relationship({"name": "has"}, self.de, None, source_id="de-1", target_id="de-x")
        self.assertEqual(
            set(ctx.exception.fields),
            {"source_id", "target_id", "definition", "obligation", "cardinality"},
        )


if __name__ == "__main__":
    unittest.main()
