# Copyright 2025 nurion team
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Command line entry point for FleetSync

Example usage:
    python -m fleetsync.main serve --port 8000
    python -m fleetsync.main watch --base-url http://coordinator:7001 --polling
"""

import asyncio
from typing import Optional

import click
import uvicorn

from fleetsync.broadcaster import FleetSync, FleetView
from fleetsync.core.settings import Settings, get_settings
from fleetsync.utils.logging import configure_logging, create_logger


def build_settings(
    base_url: Optional[str], polling: Optional[bool], log_level: Optional[str] = None
) -> Settings:
    """Environment settings with command line overrides applied."""
    overrides = {}
    if base_url:
        overrides["base_url"] = base_url
    if polling is not None:
        overrides["use_polling"] = polling
    if log_level:
        overrides["log_level"] = log_level.upper()
    return get_settings().model_copy(update=overrides)


def format_view(view: FleetView) -> str:
    """One status line per view."""
    counts = view.health_counts()
    health = " ".join(f"{h.value}={n}" for h, n in counts.items() if n)
    progress = view.progress()
    progress_text = f" progress={progress:.1f}%" if progress is not None else ""
    return (
        f"[{view.connection_state.value}] workers={len(view.workers)} {health} "
        f"throughput={view.fleet_throughput():.1f}/s "
        f"searches={len(view.searches)}{progress_text}"
    )


@click.group()
@click.option("--log-level", default=None, type=str, help="Logging level, e.g. DEBUG")
@click.pass_context
def main(ctx: click.Context, log_level: Optional[str]):
    """FleetSync: live fleet state from the coordinator."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level
    if log_level:
        try:
            configure_logging(log_level)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--log-level") from e


@main.command()
@click.option("--host", default="0.0.0.0", type=str, help="Bind address")
@click.option("--port", default=8000, type=int, help="Bind port")
@click.option("--base-url", default=None, type=str, help="Coordinator base URL")
@click.option("--polling/--push", default=None, help="Force the transport kind")
@click.pass_obj
def serve(obj: dict, host: str, port: int, base_url: Optional[str], polling: Optional[bool]):
    """Run the SSE relay."""
    from fleetsync.webui import create_app

    app = create_app(build_settings(base_url, polling, obj.get("log_level")))
    uvicorn.run(app, host=host, port=port)


@main.command()
@click.option("--base-url", default=None, type=str, help="Coordinator base URL")
@click.option("--polling/--push", default=None, help="Force the transport kind")
@click.pass_obj
def watch(obj: dict, base_url: Optional[str], polling: Optional[bool]):
    """Print a status line on every fleet change until interrupted."""
    settings = build_settings(base_url, polling, obj.get("log_level"))
    logger = create_logger("FleetSyncWatch")

    async def run() -> None:
        fleet_sync = FleetSync(settings)
        subscription = await fleet_sync.subscribe()
        logger.info(f"Watching {settings.base_url}. Press Ctrl+C to stop.")
        try:
            async for view in subscription.updates():
                click.echo(format_view(view))
        finally:
            await fleet_sync.shutdown()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == "__main__":
    main()
