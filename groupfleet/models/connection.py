# groupfleet/models/connection.py
"""WhatsApp connection (one logged-in number used to reach the gateway)"""
import enum
from sqlalchemy import Column, String
from groupfleet.models.base import BaseModel


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    PAIRING = "PAIRING"
    TIMEOUT = "TIMEOUT"


class WhatsAppConnection(BaseModel):
    __tablename__ = "whatsapp_connections"

    name = Column(String(255), nullable=False)
    number = Column(String(50), nullable=True)  # Phone number of the logged-in account
    status = Column(String(20), nullable=False, default=ConnectionStatus.DISCONNECTED.value)

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED.value

    def __repr__(self):
        return f"<WhatsAppConnection {self.name} ({self.status})>"
