"""
CLI entry point for PolicyGate.

Commands:
    evaluate    Decide one request against a set of policies
    check       Validate policies and report rule conflicts
    logs        Show recorded audit entries
    stats       Show audit statistics
    history     Show the version history of a policy

Exit codes:
    0   allowed / no critical conflicts / success
    1   denied / critical conflicts found
    2   invalid input (unreadable or invalid policies, context, database)

Architecture Note:
    The CLI only parses arguments and delegates to
    the Gatekeeper. Everything it does is available programmatically.
"""

import json
import os
import traceback
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console

from policygate import __version__
from policygate.config import CONFIG_ENV_VAR, Settings, load_settings
from policygate.engine import Gatekeeper
from policygate.errors import PolicyGateError
from policygate.logging import configure_logging
from policygate.report import (
    build_conflict_dict,
    build_result_dict,
    build_version_dict,
    print_conflicts,
    print_entries,
    print_history,
    print_result,
    print_statistics,
    to_json,
)
from policygate.schema import ConflictSeverity, load_context
from policygate.store import AuditDB

EXIT_INPUT_ERROR = 2
DEFAULT_CLI_LOG_LEVEL = "WARNING"

# Logging options given on the command line; None means "not given"
_log_options: dict[str, Any] = {"level": None, "json": None}

# Initialize Typer app with metadata
app = typer.Typer(
    name="policygate",
    help="Evaluate agent tasks against allow/deny policies.",
    add_completion=False,
    no_args_is_help=True,
)

# Rich console for formatted output
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]policygate[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option(
            "--log-level",
            help="Logging level for diagnostics written to stderr "
            "[default: settings log_level, else WARNING].",
        ),
    ] = None,
    log_json: Annotated[
        Optional[bool],
        typer.Option(
            "--log-json/--no-log-json",
            help="Write diagnostics as JSON lines [default: settings log_json].",
        ),
    ] = None,
) -> None:
    """
    PolicyGate - Policy decisions for autonomous agent tasks.

    Decide whether agent tasks may proceed under priority-ordered
    allow/deny rules, with an audit trail of every decision.
    """
    _log_options["level"] = log_level
    _log_options["json"] = log_json
    configure_logging(log_level or DEFAULT_CLI_LOG_LEVEL, json=bool(log_json))


# =============================================================================
# Helpers
# =============================================================================


def _output_json_error(error_type: str, message: str, include_traceback: bool = False) -> None:
    """Output an error in JSON format."""
    output = {
        "error": True,
        "error_type": error_type,
        "message": message,
    }
    if include_traceback:
        output["traceback"] = traceback.format_exc()
    print(json.dumps(output, indent=2))


def _fail(error_type: str, label: str, error: Exception, json_output: bool, debug: bool) -> None:
    """Report an input error and exit."""
    if json_output:
        _output_json_error(error_type, str(error), debug)
    else:
        console.print(f"[red]{label}: {error}[/red]")
        if debug:
            console.print(f"[dim]{traceback.format_exc()}[/dim]")
    raise typer.Exit(code=EXIT_INPUT_ERROR)


def _load_settings(config: Path | None) -> Settings:
    """
    Load settings and apply their logging options.

    Logging options given on the command line win. Settings only take
    effect when a file was actually read (--config or $POLICYGATE_CONFIG).
    """
    settings = load_settings(config)
    if config is not None or os.environ.get(CONFIG_ENV_VAR):
        level = _log_options["level"] or settings.log_level
        as_json = settings.log_json if _log_options["json"] is None else _log_options["json"]
        configure_logging(level, json=as_json)
    return settings


def _open_db(db: Path | None, settings: Settings) -> AuditDB:
    db_path = db or settings.audit_db_path
    if db_path is None or not Path(db_path).exists():
        console.print(f"[yellow]No audit database found at {db_path}[/yellow]")
        raise typer.Exit(code=0)
    return AuditDB(db_path)


PoliciesArg = Annotated[
    Path,
    typer.Argument(
        help="Policy YAML file, or a directory of them.",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]

ConfigOpt = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help="Settings YAML file (defaults to $POLICYGATE_CONFIG).",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]

JsonOpt = Annotated[
    bool,
    typer.Option(
        "--json",
        help="Output results in JSON format.",
    ),
]

DebugOpt = Annotated[
    bool,
    typer.Option(
        "--debug",
        help="Enable debug mode with full error tracebacks.",
    ),
]


# =============================================================================
# Commands
# =============================================================================


@app.command()
def evaluate(
    policies_path: PoliciesArg,
    context_path: Annotated[
        Path,
        typer.Argument(
            help="Evaluation context YAML/JSON file.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    simulate: Annotated[
        bool,
        typer.Option(
            "--simulate",
            help="Mark the request as a dry run (simulation_mode).",
        ),
    ] = False,
    db: Annotated[
        Optional[Path],
        typer.Option(
            "--db",
            help="Record the decision in this SQLite audit database.",
            resolve_path=True,
        ),
    ] = None,
    config: ConfigOpt = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            help="Show rule names, full error messages and conflicts.",
        ),
    ] = False,
    debug: DebugOpt = False,
    json_output: JsonOpt = False,
) -> None:
    """
    Decide one request against a set of policies.

    Exits 0 when the request is allowed and 1 when it is denied.

    Example:
        $ policygate evaluate policies/ request.yaml --db audit.db
    """
    try:
        settings = _load_settings(config)
        context = load_context(context_path)
    except Exception as e:
        _fail("context_load_error", "Error loading context", e, json_output, debug)

    if simulate:
        context = context.model_copy(update={"simulation_mode": True})

    try:
        gatekeeper = Gatekeeper(settings, audit_db=db)
    except PolicyGateError as e:
        _fail("storage_error", "Error opening audit database", e, json_output, debug)

    with gatekeeper:
        try:
            gatekeeper.load(policies_path)
        except Exception as e:
            _fail("policy_load_error", "Error loading policies", e, json_output, debug)

        if verbose and not json_output:
            console.print(f"[dim]Loaded {len(gatekeeper.manager.list_policies())} policies, "
                          f"{len(gatekeeper.index)} active rules[/dim]")

        result = gatekeeper.evaluate(context)

        if json_output:
            output = build_result_dict(result)
            if verbose:
                output["conflicts"] = [build_conflict_dict(c) for c in gatekeeper.conflicts()]
            print(to_json(output))
        else:
            print_result(result, console, verbose)
            if verbose and gatekeeper.conflicts():
                console.print()
                print_conflicts(gatekeeper.conflicts(), console)

    raise typer.Exit(code=0 if result.allowed else 1)


@app.command()
def check(
    policies_path: PoliciesArg,
    config: ConfigOpt = None,
    debug: DebugOpt = False,
    json_output: JsonOpt = False,
) -> None:
    """
    Validate policies and report rule conflicts.

    Exits 1 when any critical (opposing-effects) conflict is found.

    Example:
        $ policygate check policies/
    """
    try:
        settings = _load_settings(config)
        with Gatekeeper(settings) as gatekeeper:
            policies = gatekeeper.load(policies_path)
            conflicts = gatekeeper.conflicts()
            active_rules = len(gatekeeper.index)
    except Exception as e:
        _fail("policy_validation_error", "Invalid policies", e, json_output, debug)

    critical = [c for c in conflicts if c.severity == ConflictSeverity.CRITICAL]

    if json_output:
        print(to_json({
            "valid": True,
            "policies": [p.id for p in policies],
            "active_rules": active_rules,
            "conflicts": [build_conflict_dict(c) for c in conflicts],
            "critical_conflicts": len(critical),
        }))
    else:
        console.print(f"[green]✓[/green] {len(policies)} policies valid, {active_rules} active rules")
        console.print()
        print_conflicts(conflicts, console)

    raise typer.Exit(code=1 if critical else 0)


@app.command()
def logs(
    db: Annotated[
        Optional[Path],
        typer.Option(
            "--db",
            help="Path to the SQLite audit database.",
            resolve_path=True,
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option(
            "--limit",
            "-n",
            help="Maximum number of entries to show.",
        ),
    ] = 20,
    agent: Annotated[
        Optional[str],
        typer.Option(
            "--agent",
            help="Only show entries for this agent.",
        ),
    ] = None,
    denied: Annotated[
        bool,
        typer.Option(
            "--denied",
            help="Only show violations (denied decisions), with a total count.",
        ),
    ] = False,
    offset: Annotated[
        int,
        typer.Option(
            "--offset",
            help="Skip this many violations (with --denied).",
            min=0,
        ),
    ] = 0,
    config: ConfigOpt = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            help="Show payloads and full error messages.",
        ),
    ] = False,
    json_output: JsonOpt = False,
) -> None:
    """
    Show recorded audit entries, newest first.

    Example:
        $ policygate logs --db audit.db -n 50
        $ policygate logs --db audit.db --denied --agent agent-7
    """
    with _open_db(db, _load_settings(config)) as audit_db:
        if denied:
            entries, total = audit_db.violations(agent_id=agent, limit=limit, offset=offset)
        else:
            entries = audit_db.recent_entries(limit=limit, agent_id=agent)

    if json_output:
        items = [entry.model_dump(mode="json") for entry in entries]
        if denied:
            print(to_json({"items": items, "total": total, "limit": limit, "offset": offset}))
        else:
            print(to_json(items))
        return

    print_entries(entries, console, verbose)
    if denied and entries:
        console.print(
            f"[dim]Violations {offset + 1}-{offset + len(entries)} of {total}[/dim]"
        )


@app.command()
def stats(
    db: Annotated[
        Optional[Path],
        typer.Option(
            "--db",
            help="Path to the SQLite audit database.",
            resolve_path=True,
        ),
    ] = None,
    config: ConfigOpt = None,
    json_output: JsonOpt = False,
) -> None:
    """
    Show all-time audit statistics.

    Example:
        $ policygate stats --db audit.db
    """
    with _open_db(db, _load_settings(config)) as audit_db:
        statistics = audit_db.statistics()

    if json_output:
        print(to_json(statistics.model_dump(mode="json")))
    else:
        print_statistics(statistics, console)


@app.command()
def history(
    policies_path: PoliciesArg,
    policy_id: Annotated[
        str,
        typer.Argument(help="Policy identifier."),
    ],
    config: ConfigOpt = None,
    debug: DebugOpt = False,
    json_output: JsonOpt = False,
) -> None:
    """
    Show the version history of a policy.

    Example:
        $ policygate history policies/ finance-controls
    """
    try:
        with Gatekeeper(_load_settings(config)) as gatekeeper:
            gatekeeper.load(policies_path)
            versions = gatekeeper.manager.history(policy_id)
    except Exception as e:
        _fail("policy_history_error", "Error reading history", e, json_output, debug)

    if json_output:
        print(to_json([build_version_dict(v) for v in versions]))
    else:
        print_history(versions, console)


if __name__ == "__main__":
    app()
