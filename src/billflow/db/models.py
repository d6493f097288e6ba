"""Table-name constants."""


class Table:
    """Database table names."""

    LOCAL_SUBSCRIPTIONS = "local_subscriptions"
    SCHEMA_MIGRATIONS = "schema_migrations"
