"""
Notification providers
Registry of named provider constructors; each provider turns a
NotificationMessage into one HTTP call or one notifiers dispatch
"""
import logging
from typing import Callable, Dict, List, Any

import requests
import validators
from notifiers import get_notifier

from models.errors import ConfigurationError, UnsupportedProviderError
from models.notifications import NotificationMessage
from models.settings import NotificationProviderSettings

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 30
FOOTER = "resticflow"
COLOR_SUCCESS = "#36a64f"
COLOR_ERROR = "#dc3545"


class NotificationProvider:
    """Base provider; subclasses implement send()"""
    name = "base"

    def __init__(self, settings: NotificationProviderSettings):
        self.settings = settings
        self.url = settings.url
        self.options = dict(settings.options or {})

    def send(self, message: NotificationMessage) -> None:
        raise NotImplementedError

    def _require_url(self) -> None:
        if not self.url:
            raise ConfigurationError(f"{self.name} notification provider requires a url")
        if not validators.url(self.url, simple_host=True):
            raise ConfigurationError(f"{self.name} notification provider has an invalid url: {self.url}")

    @staticmethod
    def _check_response(response: requests.Response, provider: str) -> None:
        if response.status_code >= 400:
            raise requests.HTTPError(
                f"{provider} returned status {response.status_code}: {response.text[:200]}",
                response=response,
            )

    def _post_json(self, url: str, payload: Dict[str, Any], headers: Dict[str, str] = None) -> None:
        response = requests.post(url, json=payload, headers=headers or {}, timeout=HTTP_TIMEOUT)
        self._check_response(response, self.name)


# =============================================================================
# HTTP WEBHOOK PROVIDERS
# =============================================================================

class SlackProvider(NotificationProvider):
    name = "slack"

    def __init__(self, settings: NotificationProviderSettings):
        super().__init__(settings)
        self._require_url()

    def send(self, message: NotificationMessage) -> None:
        fields = [{'title': k, 'value': v, 'short': True} for k, v in message.details.items()]
        attachment = {
            'color': COLOR_ERROR if message.is_error else COLOR_SUCCESS,
            'title': message.title,
            'text': message.body,
            'footer': FOOTER,
            'ts': int(message.timestamp.timestamp()),
            'fields': fields,
        }
        payload = {'attachments': [attachment]}
        if self.settings.channel:
            payload['channel'] = self.settings.channel
        self._post_json(self.url, payload)


class DiscordProvider(NotificationProvider):
    name = "discord"

    def __init__(self, settings: NotificationProviderSettings):
        super().__init__(settings)
        self._require_url()

    def send(self, message: NotificationMessage) -> None:
        embed = {
            'title': message.title,
            'description': message.body,
            'color': int((COLOR_ERROR if message.is_error else COLOR_SUCCESS).lstrip('#'), 16),
            'footer': {'text': FOOTER},
            'timestamp': message.timestamp.astimezone().isoformat(),
            'fields': [{'name': k, 'value': v, 'inline': True} for k, v in message.details.items()],
        }
        self._post_json(self.url, {'embeds': [embed]})


class WebhookProvider(NotificationProvider):
    """Generic JSON POST; options are sent as extra headers"""
    name = "webhook"

    def __init__(self, settings: NotificationProviderSettings):
        super().__init__(settings)
        self._require_url()

    def send(self, message: NotificationMessage) -> None:
        headers = {str(k): str(v) for k, v in self.options.items()}
        if self.settings.token:
            headers.setdefault('Authorization', f"Bearer {self.settings.token}")
        self._post_json(self.url, message.to_dict(), headers)


class NtfyProvider(NotificationProvider):
    name = "ntfy"

    def __init__(self, settings: NotificationProviderSettings):
        super().__init__(settings)
        self._require_url()
        self.topic = str(self.options.get('topic') or settings.channel or "")
        if not self.topic:
            raise ConfigurationError("ntfy notification provider requires options.topic")

    def send(self, message: NotificationMessage) -> None:
        url = f"{self.url.rstrip('/')}/{self.topic}"
        headers = {
            'Title': message.title.encode('latin-1', errors='ignore').decode('latin-1').strip(),
            'Priority': 'high' if message.is_error else 'default',
            'Tags': 'x' if message.is_error else 'white_check_mark',
        }
        if self.settings.token:
            headers['Authorization'] = f"Bearer {self.settings.token}"
        response = requests.post(url, data=message.body.encode('utf-8'), headers=headers, timeout=HTTP_TIMEOUT)
        self._check_response(response, self.name)


class GoogleChatProvider(NotificationProvider):
    name = "google_chat"

    def __init__(self, settings: NotificationProviderSettings):
        super().__init__(settings)
        self._require_url()

    def send(self, message: NotificationMessage) -> None:
        icon = "🚨" if message.is_error else "✅"
        widgets = [{'textParagraph': {'text': message.body}}]
        for key, value in message.details.items():
            widgets.append({'keyValue': {'topLabel': key, 'content': value}})
        card = {
            'header': {'title': f"{icon} {message.title}", 'subtitle': f"{FOOTER} backup"},
            'sections': [{'widgets': widgets}],
        }
        self._post_json(self.url, {'cards': [card]})


class UptimeKumaProvider(NotificationProvider):
    """Push monitor: status=up on success, status=down with the body on error"""
    name = "uptime_kuma"

    def __init__(self, settings: NotificationProviderSettings):
        super().__init__(settings)
        self._require_url()

    def send(self, message: NotificationMessage) -> None:
        params = {
            'status': 'down' if message.is_error else 'up',
            'msg': message.body if message.is_error else 'OK',
        }
        response = requests.get(self.url, params=params, timeout=HTTP_TIMEOUT)
        self._check_response(response, self.name)


# =============================================================================
# NOTIFIERS LIBRARY PROVIDERS
# =============================================================================

class NotifiersProvider(NotificationProvider):
    """Providers delivered through the notifiers library"""
    notifier_name = ""
    required_options: List[str] = []

    def __init__(self, settings: NotificationProviderSettings):
        super().__init__(settings)
        missing = [key for key in self.required_options if not self._config().get(key)]
        if missing:
            raise ConfigurationError(f"{self.name} notification provider requires: {', '.join(missing)}")

    def _config(self) -> Dict[str, Any]:
        return dict(self.options)

    def _payload(self, message: NotificationMessage) -> Dict[str, Any]:
        return {'message': message.plain_text()}

    def send(self, message: NotificationMessage) -> None:
        notifier = get_notifier(self.notifier_name)
        config = self._config()
        config.update(self._payload(message))
        result = notifier.notify(**config)
        status = getattr(result, 'status', 'success')
        if str(getattr(status, 'value', status)).lower() != 'success':
            errors = getattr(result, 'errors', None) or ['Unknown error']
            raise RuntimeError(f"{self.name} notification failed: {', '.join(errors)}")


class TelegramProvider(NotifiersProvider):
    name = "telegram"
    notifier_name = "telegram"
    required_options = ['token', 'chat_id']

    def _config(self) -> Dict[str, Any]:
        config = {
            'token': self.settings.token or self.options.get('token', ''),
            'chat_id': self.settings.channel or self.options.get('chat_id', ''),
            'disable_web_page_preview': True,
        }
        return config


class EmailProvider(NotifiersProvider):
    name = "email"
    notifier_name = "email"
    required_options = ['to', 'from', 'host']

    def _config(self) -> Dict[str, Any]:
        options = self.options
        return {
            'to': options.get('to', ''),
            'from': options.get('from', ''),
            'host': options.get('host', ''),
            'port': int(options.get('port', 587)),
            'tls': bool(options.get('tls', True)),
            'ssl': bool(options.get('ssl', False)),
            'username': options.get('username', ''),
            'password': options.get('password', '') or self.settings.token,
        }

    def _payload(self, message: NotificationMessage) -> Dict[str, Any]:
        return {'subject': f"{FOOTER}: {message.title}", 'message': message.plain_text()}


# =============================================================================
# REGISTRY
# =============================================================================

ProviderConstructor = Callable[[NotificationProviderSettings], NotificationProvider]

PROVIDER_REGISTRY: Dict[str, ProviderConstructor] = {
    'slack': SlackProvider,
    'discord': DiscordProvider,
    'webhook': WebhookProvider,
    'ntfy': NtfyProvider,
    'google_chat': GoogleChatProvider,
    'googlechat': GoogleChatProvider,
    'google': GoogleChatProvider,
    'uptime_kuma': UptimeKumaProvider,
    'uptimekuma': UptimeKumaProvider,
    'uptime-kuma': UptimeKumaProvider,
    'telegram': TelegramProvider,
    'email': EmailProvider,
}


def create_provider(settings: NotificationProviderSettings) -> NotificationProvider:
    """Build a provider from its settings, failing loudly on unknown types"""
    constructor = PROVIDER_REGISTRY.get(settings.type.lower())
    if constructor is None:
        raise UnsupportedProviderError(settings.type, supported_providers())
    return constructor(settings)


def supported_providers() -> List[str]:
    return sorted(set(PROVIDER_REGISTRY))
