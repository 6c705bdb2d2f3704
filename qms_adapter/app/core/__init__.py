"""Process-wide identifiers shared by every adapter module."""

SERVICE_NAME = "qms-adapter"
