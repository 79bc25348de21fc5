"""
Notification service - facade over the configured providers
Builds messages from workflow results and fans them out; provider failures
are logged and never reach the caller
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from models.notifications import NotificationMessage, STATUS_ERROR, STATUS_SUCCESS
from models.settings import NotificationSettings
from services.notification_providers import NotificationProvider, create_provider

logger = logging.getLogger(__name__)


@dataclass
class NotificationResult:
    """Result of one provider delivery"""
    provider: str
    success: bool
    error_message: Optional[str] = None


class Notifier:
    """Sends success and error notifications when enabled"""

    def __init__(
        self,
        settings: Optional[NotificationSettings] = None,
        providers: Optional[List[NotificationProvider]] = None,
        force_success: bool = False,
    ):
        self.settings = settings or NotificationSettings()
        self.enabled = self.settings.enabled
        self.on_success = self.settings.notify_on_success or force_success
        self.on_error = self.settings.notify_on_error
        if providers is None:
            providers = [create_provider(p) for p in self.settings.providers] if self.enabled else []
        self.providers = providers

    def notify_success(self, title: str, body: str, details: Optional[Dict[str, str]] = None) -> List[NotificationResult]:
        if not self.enabled or not self.on_success:
            return []
        message = NotificationMessage(title=title, body=body, status=STATUS_SUCCESS, details=details or {})
        return self._send(message)

    def notify_error(
        self,
        title: str,
        body: str,
        error: Optional[Exception] = None,
        details: Optional[Dict[str, str]] = None,
    ) -> List[NotificationResult]:
        if not self.enabled or not self.on_error:
            return []
        details = dict(details or {})
        if error is not None:
            details['error'] = str(error)
        message = NotificationMessage(title=title, body=body, status=STATUS_ERROR, details=details)
        return self._send(message)

    def notify_critical(self, title: str, body: str, error: Optional[Exception] = None,
                        details: Optional[Dict[str, str]] = None) -> List[NotificationResult]:
        """Error notification sent whenever notifications are enabled, ignoring notify_on_error"""
        if not self.enabled:
            return []
        details = dict(details or {})
        if error is not None:
            details['error'] = str(error)
        message = NotificationMessage(title=title, body=body, status=STATUS_ERROR, details=details)
        return self._send(message)

    def _send(self, message: NotificationMessage) -> List[NotificationResult]:
        results = []
        for provider in self.providers:
            try:
                provider.send(message)
                results.append(NotificationResult(provider.name, True))
            except Exception as e:
                logger.warning(f"Notification via {provider.name} failed: {e}")
                results.append(NotificationResult(provider.name, False, str(e)))
        self.log_notification_results(results, message.title)
        return results

    @staticmethod
    def log_notification_results(results: List[NotificationResult], context: str = "") -> None:
        if not results:
            logger.info(f"No notification providers configured - notification skipped for {context}")
            return
        successful = [r for r in results if r.success]
        if successful:
            names = ", ".join(r.provider for r in successful)
            logger.info(f"Notification sent via {len(successful)}/{len(results)} providers: {names}")
        else:
            logger.warning(f"Notification failed via all {len(results)} providers for {context}")
