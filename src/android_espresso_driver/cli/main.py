"""CLI entry point using Typer."""

from __future__ import annotations

import typer

from android_espresso_driver.cli.commands import server, session

app = typer.Typer(
    name="android-espresso-driver",
    help="Espresso-backed WebDriver session driver for Android",
    no_args_is_help=True,
)


@app.command()
def version() -> None:
    """Show version information."""
    from android_espresso_driver import __version__

    typer.echo(f"android-espresso-driver v{__version__}")


app.add_typer(server.app, name="server")
app.add_typer(session.app, name="session")


if __name__ == "__main__":
    app()
