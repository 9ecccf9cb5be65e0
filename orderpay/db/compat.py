"""
Dialect-aware SQL functions: PostgreSQL in production, SQLite in tests.
"""
from sqlalchemy import String
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.functions import GenericFunction


class sku_text(GenericFunction):
    """SKUs of a JSON item list flattened into one searchable string.

    Matching against this instead of the raw JSON text keeps a search for
    "price" or "quantity" from hitting every order.
    """
    type = String()
    name = "sku_text"
    inherit_cache = True


@compiles(sku_text, "postgresql")
def _pg_sku_text(element, compiler, **kw):
    """PostgreSQL: jsonb_path_query_array(col::jsonb, '$[*].sku')::text"""
    col = compiler.process(element.clauses.clauses[0], **kw)
    return f"CAST(jsonb_path_query_array(CAST({col} AS jsonb), '$[*].sku') AS TEXT)"


@compiles(sku_text, "sqlite")
def _sqlite_sku_text(element, compiler, **kw):
    """SQLite: group_concat over json_each, separated by the unit separator"""
    col = compiler.process(element.clauses.clauses[0], **kw)
    return (
        "(SELECT group_concat(json_extract(value, '$.sku'), char(31)) "
        f"FROM json_each({col}))"
    )


def like_pattern(term: str) -> str:
    """Substring LIKE pattern with wildcards in ``term`` escaped (escape char ``\\``)"""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
