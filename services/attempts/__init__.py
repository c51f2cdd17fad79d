# services/attempts/__init__.py
"""attempt engine package initializer: explicit exports only; no runtime side effects."""

__all__ = ["errors", "validator", "scorer", "state_machine", "catalog", "store", "sql_store", "engine", "app"]
