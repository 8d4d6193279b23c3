APP_NAME = "MDR Registry"
APP_VERSION = "0.4.0"
