"""Schema migrations."""

from shopledger.db.schema.migrate import migrate, schema_version

__all__ = ["migrate", "schema_version"]
