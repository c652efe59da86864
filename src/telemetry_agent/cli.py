from __future__ import annotations

import asyncio
import json
from typing import List, Optional

import typer
from loguru import logger

from .agent import TelemetryAgent
from .delivery import FileBackend, OfflineStore
from .settings import AgentSettings

app = typer.Typer(help="telemetry-agent operational CLI")

# ---------------------------
# Common options
# ---------------------------


def endpoint_opt() -> Optional[str]:
    return typer.Option(None, "--endpoint", envvar="TELEMETRY_ENDPOINT", help="Ingestion endpoint URL")


def offline_path_opt() -> Optional[str]:
    return typer.Option(
        None,
        "--offline-path",
        envvar="TELEMETRY_OFFLINE_QUEUE_PATH",
        help="NDJSON file backing the offline queue",
    )


def _settings(**overrides) -> AgentSettings:
    return AgentSettings(**{k: v for k, v in overrides.items() if v is not None})


def _parse_props(props: List[str]) -> dict:
    out: dict = {}
    for item in props:
        if "=" not in item:
            raise typer.BadParameter(f"expected key=value, got {item!r}", param_hint="--prop")
        key, raw = item.split("=", 1)
        try:
            out[key] = json.loads(raw)
        except json.JSONDecodeError:
            out[key] = raw
    return out


def _offline_path(settings: AgentSettings) -> str:
    if not settings.offline_queue_path:
        typer.echo("--offline-path (or TELEMETRY_OFFLINE_QUEUE_PATH) is required", err=True)
        raise typer.Exit(code=2)
    return settings.offline_queue_path


# ---------------------------
# Commands
# ---------------------------


@app.command("track")
def track(
    name: str = typer.Argument(..., help="Event name"),
    prop: List[str] = typer.Option([], "--prop", "-p", help="key=value (value parsed as JSON if possible)"),
    endpoint: Optional[str] = endpoint_opt(),
    offline_path: Optional[str] = offline_path_opt(),
):
    """Send one event and report where it ended up."""
    settings = _settings(endpoint=endpoint, offline_queue_path=offline_path)
    properties = _parse_props(prop)

    async def _run() -> dict:
        agent = TelemetryAgent(settings)
        before = agent.get_offline_queue_size()
        agent.track(name, properties)
        # stop() waits for a critical send, flushes the ready queue and
        # keeps anything undelivered offline
        await agent.stop()
        after = agent.get_offline_queue_size()
        return {
            "event": name,
            "sent": agent.health().delivered,
            "stored": max(0, after - before),
            "offline_queue_size": after,
        }

    typer.echo(json.dumps(asyncio.run(_run()), indent=2))


@app.command("status")
def status(offline_path: Optional[str] = offline_path_opt()):
    """Show the persisted offline queue."""
    settings = _settings(offline_queue_path=offline_path)
    store = OfflineStore(settings.max_offline_queue_size, FileBackend(_offline_path(settings)))
    records = store.records()
    typer.echo(
        json.dumps(
            {
                "offline_queue_size": len(records),
                "capacity": store.max_size,
                "oldest": records[0].to_dict()["timestamp"] if records else None,
                "newest": records[-1].to_dict()["timestamp"] if records else None,
                "degraded": store.degraded,
            },
            indent=2,
        )
    )


@app.command("drain")
def drain(
    endpoint: Optional[str] = endpoint_opt(),
    offline_path: Optional[str] = offline_path_opt(),
):
    """Send the persisted offline queue to the endpoint."""
    settings = _settings(endpoint=endpoint, offline_queue_path=offline_path)
    _offline_path(settings)

    async def _run() -> dict:
        agent = TelemetryAgent(settings)
        before = agent.get_offline_queue_size()
        result = await agent.drain_offline()
        remaining = agent.get_offline_queue_size()
        await agent.stop()
        return {
            "outcome": result.outcome.value,
            "sent": result.sent,
            "before": before,
            "remaining": remaining,
        }

    out = asyncio.run(_run())
    logger.info(f"Drained {out['sent']}/{out['before']} offline events")
    typer.echo(json.dumps(out, indent=2))
    if out["remaining"]:
        raise typer.Exit(code=1)


@app.command("purge")
def purge(
    offline_path: Optional[str] = offline_path_opt(),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not prompt for confirmation"),
):
    """Delete the persisted offline queue."""
    settings = _settings(offline_queue_path=offline_path)
    path = _offline_path(settings)
    if not yes:
        typer.confirm(f"Delete offline queue at {path}?", abort=True)
    FileBackend(path, mkdirs=False).clear()
    logger.success(f"Purged offline queue {path}")
    typer.echo("ok")


if __name__ == "__main__":
    app()
