#!/usr/bin/env python3
"""
Example client for the Hetu Model Service

Lists discovered models, loads one and chats over REST streaming and WebSocket.
"""

import asyncio
import httpx
import websockets
import json
from typing import AsyncGenerator, Optional


class HetuClient:
    """Client for interacting with the Hetu Model Service."""

    def __init__(self, base_url: str = "http://localhost:8000"):
        self.base_url = base_url
        self.ws_url = base_url.replace("http", "ws", 1)

    async def get_models(self, category: Optional[str] = None) -> list:
        """Get discovered models."""
        params = {"category": category} if category else None
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{self.base_url}/models", params=params)
            response.raise_for_status()
            return response.json()

    async def scan_models(self) -> list:
        """Ask the service to rescan its model folders."""
        async with httpx.AsyncClient() as client:
            response = await client.post(f"{self.base_url}/models/scan")
            response.raise_for_status()
            return response.json()

    async def load_model(self, path: str) -> dict:
        """Load a discovered model by path. Loading can take a while."""
        async with httpx.AsyncClient(timeout=None) as client:
            response = await client.post(f"{self.base_url}/models/load", json={"path": path})
            if response.status_code != 200:
                raise Exception(f"Load failed: {response.json().get('detail')}")
            return response.json()

    async def unload_model(self) -> dict:
        async with httpx.AsyncClient() as client:
            response = await client.post(f"{self.base_url}/models/unload")
            response.raise_for_status()
            return response.json()

    async def get_session(self) -> dict:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{self.base_url}/session")
            response.raise_for_status()
            return response.json()

    async def chat(self, message: str) -> str:
        """Chat using REST API without streaming."""
        async with httpx.AsyncClient(timeout=None) as client:
            response = await client.post(
                f"{self.base_url}/chat",
                json={"message": message, "stream": False}
            )
            if response.status_code != 200:
                raise Exception(f"Chat failed: {response.json().get('detail')}")
            return response.json()["response"]

    async def chat_stream(self, message: str) -> AsyncGenerator[str, None]:
        """Chat using REST API with streaming."""
        async with httpx.AsyncClient(timeout=None) as client:
            async with client.stream(
                "POST",
                f"{self.base_url}/chat",
                json={"message": message, "stream": True}
            ) as response:
                if response.status_code != 200:
                    raise Exception(f"REST streaming error: {response.status_code}")
                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    payload = line[6:]
                    if payload == "[DONE]":
                        break
                    yield payload

    async def chat_websocket(self, message: str) -> str:
        """Chat using WebSocket, printing chunks as they arrive."""
        async with websockets.connect(f"{self.ws_url}/ws") as websocket:
            await websocket.send(json.dumps({"message": message}))

            while True:
                data = json.loads(await websocket.recv())
                if data["type"] == "chunk":
                    print(data["content"], end="", flush=True)
                elif data["type"] == "complete":
                    print()
                    return data["full_response"]
                elif data["type"] == "error":
                    raise Exception(f"WebSocket error: {data['content']}")


async def interactive_chat(client: HetuClient):
    """Interactive chat session."""
    print("Type 'quit' to exit, 'models' to see discovered models, 'load <n>' to load one")
    print()

    models = await client.get_models()

    while True:
        message = input("You: ").strip()

        if message.lower() == "quit":
            break
        elif message.lower() == "models":
            models = await client.get_models()
            for index, model in enumerate(models):
                print(f"  [{index}] {model['name']} ({model['category']}, {model['size_formatted']})")
            print()
            continue
        elif message.lower().startswith("load "):
            try:
                model = models[int(message.split()[1])]
                result = await client.load_model(model["path"])
                print(f"Loaded {result['model_name']}\n")
            except (IndexError, ValueError):
                print("Usage: load <index from 'models'>\n")
            except Exception as e:
                print(f"Error: {e}\n")
            continue
        elif not message:
            continue

        print("Hetu: ", end="", flush=True)
        try:
            async for chunk in client.chat_stream(message):
                print(chunk, end="", flush=True)
            print("\n")
        except Exception as e:
            print(f"Error: {e}\n")


async def main():
    client = HetuClient()

    session = await client.get_session()
    print(f"Backend available: {session['backend_available']}")
    print(f"Discovered models: {len(session['discovered_models'])}")
    for message in session["chat_history"]:
        speaker = "You" if message["is_user"] else "Hetu"
        print(f"{speaker}: {message['text']}")
    print()

    try:
        await interactive_chat(client)
    except KeyboardInterrupt:
        print("\nGoodbye!")


if __name__ == "__main__":
    asyncio.run(main())
