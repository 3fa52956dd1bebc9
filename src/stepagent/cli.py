# cli.py
from __future__ import annotations

import sys
import tempfile
import traceback
from datetime import datetime
from pathlib import Path
from typing import Optional

import click

from stepagent import __version__, settings
from stepagent.agent.api_client import APIClient, ControlPlane
from stepagent.git_facts.git import git_checkout
from stepagent.launch import Launcher, report_build_status
from stepagent.model import BuildStatus
from stepagent.ui.console import Console, get_console, set_console


def write_stacktrace(exc: BaseException, directory: Optional[str | Path] = None) -> Optional[Path]:
    """Persist the traceback of an unexpected fault; returns the file written, if any."""
    console = get_console()
    filename = f"stepagent-stacktrace-{datetime.now().strftime('%Y-%m-%dT%H-%M-%S')}"
    tracefile = Path(directory or tempfile.gettempdir()) / filename

    console.print_error(
        "Internal launcher error",
        f"{type(exc).__name__}: {exc}",
        suggestion="Please file a bug about this.",
    )
    try:
        tracefile.write_text("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
        tracefile.chmod(0o600)
    except OSError as e:
        console.print_error("Unable to write stacktrace to file", str(e))
        return None
    console.print_info(f"Stacktrace written to {tracefile}")
    return tracefile


def guarded_run(api: ControlPlane, build_id: str, launcher: Launcher) -> BuildStatus:
    """
    Run the build; any unexpected fault still ends in a FAILURE report.
    """
    try:
        return launcher.run(build_id)
    except Exception as exc:
        try:
            get_console().print_exception(exc)
            write_stacktrace(exc)
            report_build_status(api, BuildStatus.FAILURE, build_id)
        except Exception as final:
            # Recovery itself failed; the last thing left is stderr
            print("ERROR: Something terrible has happened. Please file a ticket with this info:", file=sys.stderr)
            print(f"ERROR: {final}\n{traceback.format_exc()}", file=sys.stderr)
        return BuildStatus.FAILURE


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--api-uri", default=settings.API_URI, show_default=True, help="API URI of the control plane")
@click.option("--token", envvar=settings.TOKEN_ENV, default=None, help="Token used for accessing the control-plane API")
@click.option("--workspace", default=settings.WORKSPACE, show_default=True, help="Location for checking out and running code")
@click.option("--emitter", default=settings.EMITTER, show_default=True, help="Location for writing log lines to")
@click.option("--shell", default=settings.SHELL, show_default=True, help="Shell used for the build session")
@click.option("--step-timeout", default=settings.STEP_TIMEOUT, type=float, help="Seconds a step may run before the session is killed")
@click.option("--setup-script", default=settings.SETUP_SCRIPT, show_default=True, help="Script sourced before the first step, relative to the source dir")
@click.option("--checkout/--no-checkout", default=True, show_default=True, help="Clone the pipeline repository into the workspace")
@click.option("--debug", is_flag=True, default=False, help="Enable debug mode (show stack traces and detailed output)")
@click.version_option(__version__, prog_name="stepagent")
@click.argument("build_id", required=False)
@click.pass_context
def cli(ctx, api_uri, token, workspace, emitter, shell, step_timeout, setup_script, checkout, debug, build_id):
    """Launch a build: run its steps in one shell and report the outcome."""
    set_console(Console(debug=debug))

    if not build_id:
        click.echo(ctx.get_help())
        ctx.exit(0)

    api = APIClient(api_uri, token)
    launcher = Launcher(
        api,
        workspace,
        emitter,
        shell=shell,
        step_timeout=step_timeout,
        setup_script=setup_script,
        checkout=git_checkout if checkout else None,
    )

    status = guarded_run(api, build_id, launcher)
    sys.exit(0 if status is BuildStatus.SUCCESS else 1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
