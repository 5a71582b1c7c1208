"""
Postgres kind — roles, databases, extensions and grants.

Every statement goes through ``psql`` as the database superuser, with
the SQL on stdin so passwords never show up in the process list.
Probes query the catalogs instead of running ``CREATE`` and ignoring
"already exists" errors.

Params:
    action (str): role | database | extension | grant | sql
    as_user (str): OS user running psql (default: postgres)
    database (str): Database to connect to (default: postgres)

    role:       name, password, login (default true), superuser
    database:   name, owner, encoding
    extension:  name, database
    grant:      role, database, privileges (default: ALL)
    sql:        sql, check (query printing a row when already done)
"""

from __future__ import annotations

import logging
from typing import Any

from provisioner.adapters.base import StepKind, as_list, require
from provisioner.adapters.shell.runner import (
    DEFAULT_PROBE_TIMEOUT,
    check_command,
    run_command,
)
from provisioner.core.engine.errors import ApplyError, ProbeError
from provisioner.core.models.step import ProbeResult, StepContext

logger = logging.getLogger(__name__)

ACTIONS = ("role", "database", "extension", "grant", "sql")

_REQUIRED = {
    "role": ("name",),
    "database": ("name",),
    "extension": ("name",),
    "grant": ("role", "database"),
    "sql": ("sql",),
}

# Database privileges granted by ALL
_DB_PRIVILEGES = ("CREATE", "CONNECT", "TEMPORARY")


def quote_ident(name: str) -> str:
    return '"' + str(name).replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def _psql_argv(database: str) -> list[str]:
    return ["psql", "-X", "-v", "ON_ERROR_STOP=1", "-A", "-t", "-q", "-d", database]


def query(sql: str, params: dict[str, Any], database: str | None = None) -> str:
    """Run a read-only query and return its unaligned output.

    Raises:
        ProbeError: psql is missing or the query failed.
    """
    result = run_command(
        _psql_argv(database or params.get("database", "postgres")),
        as_user=params.get("as_user", "postgres"),
        input_text=sql,
        timeout=DEFAULT_PROBE_TIMEOUT,
    )
    if not result.ok:
        raise ProbeError(
            f"psql query failed (exit {result.returncode}): {result.stderr.strip()}"
        )
    return result.stdout.strip()


def execute(sql: str, params: dict[str, Any], ctx: StepContext, database: str | None = None) -> None:
    """Run statements, stopping at the first error."""
    check_command(
        _psql_argv(database or params.get("database", "postgres")),
        ctx=ctx,
        as_user=params.get("as_user", "postgres"),
        input_text=sql,
    )


def _exists(sql: str, params: dict[str, Any], database: str | None = None) -> bool:
    return query(sql, params, database) != ""


def _privileges(params: dict[str, Any]) -> list[str]:
    privs = [p.upper() for p in as_list(params.get("privileges", "ALL"))]
    return list(_DB_PRIVILEGES) if privs == ["ALL"] else privs


class PostgresKind(StepKind):
    """Manage PostgreSQL objects through psql."""

    @property
    def name(self) -> str:
        return "postgres"

    def has_probe_for(self, params: dict[str, Any]) -> bool:
        return params.get("action") != "sql" or bool(params.get("check"))

    def validate(self, params: dict[str, Any]) -> tuple[bool, str]:
        action = params.get("action")
        if action not in ACTIONS:
            return False, f"Invalid action '{action}'. Valid: {', '.join(ACTIONS)}"
        ok, msg = require(params, *_REQUIRED[action])
        if not ok:
            return ok, msg
        if action == "grant":
            unknown = [p for p in _privileges(params) if p not in _DB_PRIVILEGES]
            if unknown:
                return False, f"Unknown database privilege(s): {', '.join(unknown)}"
        return True, ""

    # ── Probe ────────────────────────────────────────────────────

    def probe(self, params: dict[str, Any], ctx: StepContext) -> ProbeResult:
        action = params["action"]

        if action == "role":
            found = _exists(
                f"SELECT 1 FROM pg_roles WHERE rolname = {quote_literal(params['name'])}",
                params,
            )
        elif action == "database":
            found = _exists(
                "SELECT 1 FROM pg_database d JOIN pg_roles r ON r.oid = d.datdba "
                f"WHERE d.datname = {quote_literal(params['name'])}"
                + (f" AND r.rolname = {quote_literal(params['owner'])}" if params.get("owner") else ""),
                params,
            )
        elif action == "extension":
            found = _exists(
                f"SELECT 1 FROM pg_extension WHERE extname = {quote_literal(params['name'])}",
                params,
                params.get("database"),
            )
        elif action == "grant":
            checks = " AND ".join(
                f"has_database_privilege({quote_literal(params['role'])}, "
                f"{quote_literal(params['database'])}, {quote_literal(p)})"
                for p in _privileges(params)
            )
            found = query(f"SELECT {checks}", params) == "t"
        else:
            found = _exists(params["check"], params)

        return ProbeResult.SATISFIED if found else ProbeResult.UNSATISFIED

    # ── Apply ────────────────────────────────────────────────────

    def apply(self, params: dict[str, Any], ctx: StepContext) -> str:
        action = params["action"]
        try:
            handler = getattr(self, f"_apply_{action}")
            return handler(params, ctx)
        except ProbeError as e:
            raise ApplyError(str(e)) from e

    def _apply_role(self, params: dict[str, Any], ctx: StepContext) -> str:
        name = params["name"]
        options = ["LOGIN" if params.get("login", True) else "NOLOGIN"]
        if params.get("superuser"):
            options.append("SUPERUSER")
        if params.get("password") is not None:
            options.append(f"PASSWORD {quote_literal(params['password'])}")

        exists = _exists(f"SELECT 1 FROM pg_roles WHERE rolname = {quote_literal(name)}", params)
        verb = "ALTER" if exists else "CREATE"
        execute(f"{verb} ROLE {quote_ident(name)} WITH {' '.join(options)};", params, ctx)
        return f"{'Altered' if exists else 'Created'} role {name}"

    def _apply_database(self, params: dict[str, Any], ctx: StepContext) -> str:
        name = params["name"]
        owner = params.get("owner")
        exists = _exists(f"SELECT 1 FROM pg_database WHERE datname = {quote_literal(name)}", params)

        if exists:
            if owner:
                execute(f"ALTER DATABASE {quote_ident(name)} OWNER TO {quote_ident(owner)};", params, ctx)
            return f"Database {name} exists"

        sql = f"CREATE DATABASE {quote_ident(name)}"
        if owner:
            sql += f" OWNER {quote_ident(owner)}"
        if params.get("encoding"):
            sql += f" ENCODING {quote_literal(params['encoding'])}"
        execute(sql + ";", params, ctx)
        return f"Created database {name}"

    def _apply_extension(self, params: dict[str, Any], ctx: StepContext) -> str:
        execute(
            f"CREATE EXTENSION IF NOT EXISTS {quote_ident(params['name'])};",
            params,
            ctx,
            params.get("database"),
        )
        return f"Extension {params['name']} in {params.get('database', 'postgres')}"

    def _apply_grant(self, params: dict[str, Any], ctx: StepContext) -> str:
        privs = ", ".join(_privileges(params))
        execute(
            f"GRANT {privs} ON DATABASE {quote_ident(params['database'])} "
            f"TO {quote_ident(params['role'])};",
            params,
            ctx,
        )
        return f"Granted {privs} on {params['database']} to {params['role']}"

    def _apply_sql(self, params: dict[str, Any], ctx: StepContext) -> str:
        execute(params["sql"], params, ctx)
        return "SQL executed"
