"""
Host process entry point.

Reads length-prefixed JSON messages from stdin and answers on stdout.
Format: 4 bytes (length, native byte order) + UTF-8 JSON.
Logs go to the log file and stderr only.
"""

import asyncio
import json
import struct
import sys
from typing import BinaryIO, Dict, Optional

from .core.engine import CategorizationEngine
from .utils.config import load_config
from .utils.logger import logger


def get_message(stream: Optional[BinaryIO] = None) -> Optional[Dict]:
    """
    Read one message from the host.

    Returns:
        The decoded message, or None when the stream is closed
    """
    stream = stream or sys.stdin.buffer
    raw_length = stream.read(4)
    if len(raw_length) < 4:
        return None
    message_length = struct.unpack("@I", raw_length)[0]
    message = stream.read(message_length).decode("utf-8")
    return json.loads(message)


def send_message(message_content: Dict, stream: Optional[BinaryIO] = None) -> None:
    """Write one message to the host."""
    stream = stream or sys.stdout.buffer
    encoded_content = json.dumps(message_content).encode("utf-8")
    stream.write(struct.pack("@I", len(encoded_content)))
    stream.write(encoded_content)
    stream.flush()


async def serve(
    engine: CategorizationEngine,
    reader: Optional[BinaryIO] = None,
    writer: Optional[BinaryIO] = None,
) -> None:
    """Answer messages until the host closes the stream."""
    await engine.start()
    try:
        while True:
            try:
                message = await asyncio.to_thread(get_message, reader)
            except (ValueError, UnicodeDecodeError) as e:
                logger.error(f"Malformed message: {e}")
                send_message({"status": "error", "error": f"Malformed message: {e}"}, writer)
                continue

            if message is None:
                logger.info("Stdin closed, exiting.")
                break

            logger.info(f"Received message type: {message.get('type')}")
            try:
                response = await engine.handle_message(message)
            except Exception as e:
                logger.error(f"Critical Error in Main Loop: {e}", exc_info=True)
                response = {"status": "error", "error": str(e)}
            send_message(response, writer)
    finally:
        await engine.stop()


def main() -> None:
    config = load_config()
    logger.setLevel(config.get("log_level", "INFO"))
    logger.info("SortEngine host started")
    asyncio.run(serve(CategorizationEngine(config)))


if __name__ == "__main__":
    main()
