"""Serve command: status API + orchestrator + chain listener in one process."""

import typer

from podsettle.api.main import run_api

app = typer.Typer(help="Run the settlement service and its status API")


@app.callback(invoke_without_command=True)
def serve(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", "--host", help="Bind host"),
    port: int = typer.Option(8000, "--port", help="Bind port"),
) -> None:
    if ctx.invoked_subcommand is not None:
        return
    run_api(host=host, port=port, profile=ctx.obj.get("profile"), config_dir=ctx.obj.get("config_dir"))
