"""Retry demo: Tune retry and backoff for an unreliable network."""

import asyncio
import logging

from knowrithm import KnowrithmClient, KnowrithmConfig, RetryConfig
from knowrithm.exceptions import HttpStatusError, TimeoutError


async def main():
    # Retries are logged at INFO level
    logging.basicConfig(level=logging.INFO)

    config = KnowrithmConfig(
        retry=RetryConfig(
            max_retries=6,
            retry_delay_ms=500,
            backoff_multiplier=2.0,
            retryable_status_codes=[408, 429, 500, 502, 503, 504],
        ),
        timeout=10.0,
    )

    async with KnowrithmClient.from_env(config) as client:
        try:
            agents = await client.request("GET", "/agent", params={"page": 1, "per_page": 20})
        except TimeoutError as e:
            print(f"Timed out: {e.details.get('suggestion')}")
            return
        except HttpStatusError as e:
            print(f"Failed after {e.details.get('attempt_number')} attempts: {e}")
            return

        # A single call can override the configured policy
        health = await client.request("GET", "/health", max_retries=1)

        print(f"Agents: {agents}")
        print(f"Health: {health}")


if __name__ == "__main__":
    asyncio.run(main())
