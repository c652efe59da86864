"""
Demo script for the telemetry agent.

Runs an agent against an in-process transport that fails over, rate limits
and goes offline, then shows the offline queue draining on reconnect.
"""

import asyncio
from typing import Mapping

from loguru import logger

from telemetry_agent import AgentSettings, TelemetryAgent
from telemetry_agent.delivery import Transport, TransportResponse


class FlakyTransport(Transport):
    """Primary endpoint always fails; the fallback rate limits once."""

    def __init__(self):
        self.rate_limited = False

    async def send(self, endpoint: str, body: dict, headers: Mapping[str, str]) -> TransportResponse:
        # Simulate network latency
        await asyncio.sleep(0.01)
        if "primary" in endpoint:
            return TransportResponse(503)
        if not self.rate_limited:
            self.rate_limited = True
            return TransportResponse(429, {"Retry-After": "0.2"})
        logger.info(f"Ingest accepted {len(body['events'])} events (batch={body['batchId'][:8]})")
        return TransportResponse(202)


async def main():
    settings = AgentSettings(
        endpoint="https://primary.example.com/v1/batch",
        fallback_endpoints=["https://fallback.example.com/v1/batch"],
        batch_size=5,
        flush_interval_ms=200,
        high_priority_delay_ms=50,
        restore_drain_delay_ms=100,
    )
    async with TelemetryAgent(settings, transport=FlakyTransport()) as agent:
        logger.info("🚀 Tracking 12 events")
        for i in range(12):
            agent.track("page_view", {"page": f"/p/{i}"})
        agent.track("add_to_cart", {"sku": "A-1"})
        agent.track("purchase", {"order_id": "o-1", "value": 42.0})
        agent.track("purchase", {"order_id": "o-1", "value": 42.0})  # duplicate, suppressed

        await asyncio.sleep(0.5)
        logger.info(f"After first wave: {agent.stats}")

        logger.warning("⚠️  Going offline")
        await agent.set_offline()
        for i in range(7):
            agent.track("page_view", {"page": f"/offline/{i}"})
        await agent.flush()
        logger.info(f"Offline queue holds {agent.get_offline_queue_size()} events")

        logger.info("✅ Back online")
        await agent.set_online()
        await asyncio.sleep(0.5)

        health = agent.health()
        logger.info(
            f"Final health: queue={health.queue_size} "
            f"offline={health.offline_queue_size}/{health.offline_capacity}"
        )

    logger.info("✅ Telemetry agent demo complete")


if __name__ == "__main__":
    asyncio.run(main())
