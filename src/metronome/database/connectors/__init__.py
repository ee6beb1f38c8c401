"""Data source connectors."""

from .mssql import MssqlDataSource, parse_pyodbc_error, translate_pyodbc_error

__all__ = ["MssqlDataSource", "parse_pyodbc_error", "translate_pyodbc_error"]
