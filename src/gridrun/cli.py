"""CLI entry point for gridrun."""

import asyncio
import os

import typer
from dotenv import load_dotenv
from rich.console import Console

from gridrun.config import AppSettings
from gridrun.domain.models import BrowserChoice, FilePolicy, RunMode, select_mode
from gridrun.logs import configure_logging, get_logger
from gridrun.orchestration.runner import run_mode

# Load environment variables
load_dotenv()

configure_logging(os.environ.get("GRIDRUN_LOG_LEVEL", "INFO"))

logger = get_logger("gridrun")
console = Console()

app = typer.Typer(
    name="gridrun",
    help="Run one browser test on a remote grid through a Sauce Connect tunnel",
    add_completion=False,
)


@app.command()
def run(
    demo_local: bool = typer.Option(
        False, "--demo-local", "-l", help="Serve the example page locally and test it through the tunnel"
    ),
    demo_remote: bool = typer.Option(
        False, "--demo-remote", "-r", help="Test https://example.com/ through the tunnel"
    ),
    sauce_connect: bool = typer.Option(
        False, "--sauce-connect", "-t", help="Only open the tunnel and keep it up until interrupted"
    ),
    server: bool = typer.Option(
        False, "--server", "-s", help="Only serve the example page until interrupted"
    ),
    browser: BrowserChoice = typer.Option(
        BrowserChoice.CHROME_LATEST, "--browser", help="Capability profile to request from the grid"
    ),
    sc_version: str = typer.Option(
        "5.2.3", "--sc-version", help="Sauce Connect version; 4.x and 5.x take different options"
    ),
    serve_tree: bool = typer.Option(
        False, "--serve-tree", help="Serve any file under the document root, not just index.html"
    ),
) -> None:
    """Run exactly one mode: --demo-local, --demo-remote, --sauce-connect or --server."""
    try:
        mode = select_mode({
            RunMode.DEMO_LOCAL: demo_local,
            RunMode.DEMO_REMOTE: demo_remote,
            RunMode.SAUCE_CONNECT: sauce_connect,
            RunMode.SERVER: server,
        })
        settings = AppSettings.from_env(
            browser=browser,
            sc_version=sc_version,
            file_policy=FilePolicy.TREE if serve_tree else FilePolicy.INDEX_ONLY,
        )

        outcome = asyncio.run(run_mode(settings, mode))

    except KeyboardInterrupt:
        logger.warning("Run interrupted by user")
        console.print("Aborted.")
        raise typer.Exit(130)

    except Exception as e:
        logger.error(
            "Run failed",
            error=f"{type(e).__name__}: {e}",
            exc_info=True,
        )
        raise typer.Exit(1)

    logger.debug("Run finished", mode=outcome["mode"], resources=",".join(outcome["resources"]))
    if mode in (RunMode.DEMO_LOCAL, RunMode.DEMO_REMOTE):
        console.print("\nDone.")


def main() -> None:
    """Main entry point."""
    if not os.getenv("SAUCE_USERNAME") or not os.getenv("SAUCE_ACCESS_KEY"):
        console.print("Warning: SAUCE_USERNAME / SAUCE_ACCESS_KEY not set in environment")
        console.print("   Set them in a .env file or export them before running")

    app()


if __name__ == "__main__":
    main()
