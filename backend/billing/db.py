from django.db import connection


def apply_statement_timeout(timeout_ms: int) -> None:
    """Bound every statement of the current transaction (PostgreSQL only)."""
    if timeout_ms <= 0 or connection.vendor != "postgresql":
        return
    with connection.cursor() as cursor:
        cursor.execute("SELECT set_config('statement_timeout', %s, true)", [str(int(timeout_ms))])
