"""
Test module for ProcessDesk client functionality.
Provides a simple smoke check of the real-time channel: identify, then send a
message to ourselves and print what comes back.
"""

import asyncio

from websockets.asyncio.client import connect

from ..core.message.protocol import Event, EventType


async def send_message(context, host="localhost", port=3001, user_id="test_user"):
    """
    Connect to a running server, identify and send one self-addressed message.
    Prints frames until the message comes back as message-delivered.
    """
    uri = f"ws://{host}:{port}"
    async with connect(uri) as websocket:
        await websocket.send(Event(EventType.IDENTIFY, {
            "userId": user_id,
            "userSummary": {"id": user_id, "fullName": "Smoke Test"},
        }).serialize())
        await websocket.send(Event(EventType.SEND_MESSAGE, {
            "senderId": user_id,
            "recipientId": user_id,
            "content": context,
        }).serialize())

        while True:
            response = await asyncio.wait_for(websocket.recv(), timeout=10)
            print(f"Received: {response}")
            event = Event.deserialize(response)
            if event.type in (EventType.MESSAGE_DELIVERED, EventType.ERROR):
                break


def main(context, host="localhost", port=3001, user_id="test_user"):
    asyncio.run(send_message(context, host, port, user_id))
