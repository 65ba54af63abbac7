"""Streaming example: Print a chat reply event by event as it arrives."""

import asyncio

from knowrithm import KnowrithmClient


async def main():
    async with KnowrithmClient.from_env() as client:
        stream = await client.messages.send_message(
            "conversation-id",
            "Summarize the uploaded onboarding guide",
            stream=True,
        )

        # Push: callbacks receive the event data
        stream.on("error", lambda data: print(f"\n[server error] {data}"))
        stream.on_end(lambda: print("\n\n--- Complete ---"))

        # Pull: the same events through async iteration
        async for event in stream:
            if event.event == "token" and isinstance(event.data, dict):
                print(event.data.get("content", ""), end="", flush=True)
            elif event.event == "done":
                stream.close()


if __name__ == "__main__":
    asyncio.run(main())
