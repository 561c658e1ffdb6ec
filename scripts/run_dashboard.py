"""CLI entrypoint to run the dashboard runtime."""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

import uvicorn
from rich.console import Console
from rich.live import Live

from homedash.app.console import render_view
from homedash.app.main import create_app
from homedash.core.errors import IssueFailed
from homedash.core.runtime import DashboardRuntime, View
from homedash.core.settings import RuntimeSettings
from homedash.utils.logging import get_logger


logger = get_logger("DashboardCLI")


async def _watch(runtime: DashboardRuntime, console: Console, refresh_seconds: float) -> None:
    with Live(render_view(runtime.dashboard), console=console, refresh_per_second=4) as live:
        while True:
            await asyncio.sleep(refresh_seconds)
            live.update(render_view(runtime.dashboard))


async def _launch_and_wait(runtime: DashboardRuntime, service_id: str, console: Console) -> None:
    # Give the service list a moment to load before looking the id up.
    for _ in range(50):
        if runtime.dashboard.services:
            break
        await asyncio.sleep(0.1)
    try:
        action = runtime.services.launch(service_id)
    except IssueFailed as exc:
        console.print(f"[red]Launch rejected:[/red] {exc.message}")
        return
    outcome = await action.wait()
    console.print(f"{outcome.kind.value} {outcome.target_id}: {outcome.outcome.value} after {outcome.attempts_used} checks")


async def main() -> None:
    parser = argparse.ArgumentParser(description="Run the homedash dashboard runtime.")
    parser.add_argument("--config", type=Path, default=Path("config/dashboard.example.yml"), help="Path to runtime YAML")
    parser.add_argument("--view", choices=[view.value for view in View], default=View.HOME.value, help="Initial view")
    parser.add_argument("--watch", action="store_true", help="Render the live dashboard in the terminal")
    parser.add_argument("--launch", metavar="SERVICE_ID", help="Launch one service, wait for the outcome and exit")
    parser.add_argument("--serve", action="store_true", help="Serve the control API instead")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8090)
    args = parser.parse_args()

    settings = RuntimeSettings.from_file(args.config)
    runtime = DashboardRuntime(settings)
    runtime.active_view = View(args.view)

    if args.serve:
        app = create_app(settings, runtime=runtime)
        server = uvicorn.Server(uvicorn.Config(app, host=args.host, port=args.port, log_level="info"))
        logger.info("Serving control API on http://%s:%d", args.host, args.port)
        await server.serve()
        return

    console = Console()
    if args.launch:
        await runtime.start()
        try:
            await _launch_and_wait(runtime, args.launch, console)
        finally:
            await runtime.stop()
        return

    if args.watch:
        await runtime.start()
        try:
            await _watch(runtime, console, refresh_seconds=0.5)
        finally:
            await runtime.stop()
        return

    await runtime.run_forever()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
