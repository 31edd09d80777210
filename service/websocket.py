"""
WebSocket handler for real-time streaming chat.
"""
import json
from typing import Dict, Any
from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger

from hetu.session import GenerationOutcome, GenerationStatus


class ConnectionManager:
    """Manages WebSocket connections."""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket, client_id: str):
        """Accept a WebSocket connection."""
        await websocket.accept()
        self.active_connections[client_id] = websocket
        logger.info(f"WebSocket connected: {client_id}")

    def disconnect(self, client_id: str):
        """Remove a WebSocket connection."""
        if client_id in self.active_connections:
            del self.active_connections[client_id]
            logger.info(f"WebSocket disconnected: {client_id}")

    async def send_message(self, client_id: str, message: Dict[str, Any]) -> bool:
        """Send a message to a specific client."""
        if client_id not in self.active_connections:
            return False

        try:
            await self.active_connections[client_id].send_text(json.dumps(message))
            return True
        except Exception as e:
            logger.error(f"Error sending message to {client_id}: {e}")
            self.disconnect(client_id)
            return False


# Global connection manager
manager = ConnectionManager()


async def handle_websocket(websocket: WebSocket, client_id: str = "default"):
    """Handle WebSocket connections for real-time chat."""
    await manager.connect(websocket, client_id)

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message_data = json.loads(data)
            except json.JSONDecodeError:
                await manager.send_message(client_id, {
                    "type": "error",
                    "content": "Invalid JSON"
                })
                continue

            message = message_data.get("message", "") if isinstance(message_data, dict) else ""
            if not message:
                await manager.send_message(client_id, {
                    "type": "error",
                    "content": "No message provided"
                })
                continue

            from service.main import session_manager
            if not session_manager:
                await manager.send_message(client_id, {
                    "type": "error",
                    "content": "Session manager not available"
                })
                continue

            await manager.send_message(client_id, {
                "type": "start",
                "content": "Starting generation..."
            })

            chunk_count = 0
            full_response = ""
            outcome = GenerationOutcome()
            stream = session_manager.generate(message, outcome)
            async for chunk in stream:
                chunk_count += 1
                full_response += chunk

                success = await manager.send_message(client_id, {
                    "type": "chunk",
                    "content": chunk,
                    "chunk_id": chunk_count
                })

                # Stop consuming; the partial response is discarded
                if not success:
                    logger.warning(f"Client {client_id} disconnected during streaming")
                    await stream.aclose()
                    return

            if outcome.status == GenerationStatus.NO_MODEL:
                await manager.send_message(client_id, {
                    "type": "error",
                    "content": outcome.response
                })
            elif outcome.error:
                await manager.send_message(client_id, {
                    "type": "error",
                    "content": outcome.error
                })
            else:
                await manager.send_message(client_id, {
                    "type": "complete",
                    "content": "Generation complete",
                    "total_chunks": chunk_count,
                    "full_response": full_response
                })
                logger.info(f"WebSocket generation complete for {client_id}: {chunk_count} chunks")

    except WebSocketDisconnect:
        manager.disconnect(client_id)
        logger.info(f"WebSocket client {client_id} disconnected")
