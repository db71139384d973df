"""runledger CLI: inspect and manage durable runs.

Entry point for the ``runledger`` command. Requires ``pip install runledger[cli]``.

Commands:
    runs                Dashboard of active and recent runs
    runs ls             List runs with filters
    runs show           Show a run and its checkpoint ledger
    runs resume-state   Show where a resumed executor would pick up
    runs start          Create a run (idempotent on --key)
    runs cancel         Cancel a pending or running run
"""

from __future__ import annotations


def _require_typer():
    """Check that typer is available."""
    try:
        import typer  # noqa: F401
    except ImportError:
        import sys

        print("Error: typer is required for the CLI. Install with: pip install runledger[cli]", file=sys.stderr)
        raise SystemExit(1) from None


def create_app():
    """Create the Typer app with all subcommands."""
    _require_typer()

    import typer

    from runledger.cli.runs import app as runs_app

    app = typer.Typer(
        name="runledger",
        help="Durable run ledger inspection and management CLI.",
        no_args_is_help=True,
    )
    app.add_typer(runs_app, name="runs")

    return app


def main():
    """CLI entry point."""
    app = create_app()
    app()
