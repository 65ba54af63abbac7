"""Simple example: Upload a document and wait for processing."""

import asyncio

from knowrithm import KnowrithmClient


async def main():
    async with KnowrithmClient(api_key="your_api_key", api_secret="your_api_secret") as client:
        # Asynchronous tasks are polled to completion transparently
        result = await client.documents.upload_documents(
            "agent-id",
            file_paths=["handbook.pdf"],
            metadata={"category": "onboarding"},
        )
        print(result)


if __name__ == "__main__":
    asyncio.run(main())
