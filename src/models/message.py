"""
Message data models for the Meshtastic IRC bridge

Defines the relay message handed from the chat side to the mesh side and
the text framing shared by both mesh transports.
"""

from dataclasses import dataclass


# Every message the bridge injects into the mesh starts with this tag. Text
# received from the mesh that already carries it is an echo.
OUTBOUND_TAG_PREFIX = "[IRC-"


def format_outbound_text(sender: str, content: str) -> str:
    """Render chat text the way it is transmitted on the mesh"""
    return f"{OUTBOUND_TAG_PREFIX}{sender}] {content}"


def format_inbound_text(sender: str, text: str) -> str:
    """Render mesh text the way it is posted to the chat channel"""
    return f"[mesh-{sender}]: {text}"


@dataclass(frozen=True)
class RelayMessage:
    """A chat message on its way to the mesh"""
    sender: str
    content: str

    def to_mesh_text(self) -> str:
        """Get the tagged text transmitted on the mesh"""
        return format_outbound_text(self.sender, self.content)
