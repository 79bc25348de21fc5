"""
Notification models
Message payload shared by every notification provider
"""
import socket
from datetime import datetime
from typing import Dict, Any
from pydantic import BaseModel, Field

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_WARNING = "warning"


class NotificationMessage(BaseModel):
    """A single notification sent to every configured provider"""
    title: str
    body: str
    status: str = STATUS_SUCCESS
    timestamp: datetime = Field(default_factory=datetime.now)
    details: Dict[str, str] = Field(default_factory=dict)
    host: str = Field(default_factory=socket.gethostname)

    @property
    def is_error(self) -> bool:
        return self.status == STATUS_ERROR

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON webhooks"""
        data = {
            'title': self.title,
            'body': self.body,
            'status': self.status,
            'host': self.host,
            'timestamp': self.timestamp.isoformat(),
        }
        if self.details:
            data['details'] = dict(self.details)
        return data

    def plain_text(self) -> str:
        """Title, body and details as one text block"""
        lines = [self.title, "", self.body]
        if self.details:
            lines.append("")
            lines.extend(f"{key}: {value}" for key, value in self.details.items())
        return "\n".join(lines)
