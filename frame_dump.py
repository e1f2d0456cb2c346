"""
Hex dump rendering for relayed chunks (debug mode only).

Each dump line holds 16 bytes:

    00000000  68 65 6c 6c 6f 20 77 6f  72 6c 64 0a              |hello world.|
"""
import logging

logger = logging.getLogger(__name__)

BYTES_PER_LINE = 16


def _printable(b):
    return chr(b) if 32 <= b <= 126 else "."


def hex_dump(data):
    """Render bytes as offset / hex / ASCII lines. Empty input gives ''."""
    lines = []
    for offset in range(0, len(data), BYTES_PER_LINE):
        chunk = data[offset:offset + BYTES_PER_LINE]
        left = " ".join(f"{b:02x}" for b in chunk[:8])
        right = " ".join(f"{b:02x}" for b in chunk[8:])
        text = "".join(_printable(b) for b in chunk)
        lines.append(f"{offset:08x}  {left:<23}  {right:<23}  |{text}|\n")
    return "".join(lines)


def log_frame(session_id, side, data):
    logger.debug(f"[{session_id}] Read from {side}:\n{hex_dump(data)}\n")
