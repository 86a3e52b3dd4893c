"""Exception taxonomy for the channel connection layer.

Services raise these; routers translate them to HTTP responses.
"""


class ChannelError(Exception):
    """Base exception for channel connection errors."""

    pass


class ChannelNotFoundError(ChannelError):
    """Channel not found in the organization."""

    pass


class UnsupportedOperationError(ChannelError):
    """Provider does not implement the requested capability."""

    def __init__(self, provider: str, operation: str):
        self.provider = provider
        self.operation = operation
        super().__init__(f"Provider '{provider}' does not support '{operation}'")


class ProviderError(ChannelError):
    """
    Provider API call failed (network, timeout, HTTP error, malformed response).

    Raised at the provider boundary in place of raw transport exceptions.
    `detail` keeps the full provider response for the audit log.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        detail: str | None = None,
    ):
        self.provider = provider
        self.status_code = status_code
        self.detail = detail or message
        super().__init__(message)


class AuthorizationError(ChannelError):
    """
    OAuth callback rejected (denied, CSRF, expired/consumed state, tampering).

    `code` is the short error key surfaced in the redirect.
    """

    def __init__(self, code: str, message: str | None = None):
        self.code = code
        super().__init__(message or code)


class ExchangeError(ChannelError):
    """Provider rejected the authorization code (expired, replayed, revoked)."""

    pass


class SyncError(ChannelError):
    """Sync run failed (network, rate limit, malformed item, permission revoked)."""

    pass


class WebhookError(ChannelError):
    """Base for inbound webhook rejections."""

    pass


class WebhookSignatureError(WebhookError):
    """Missing or invalid webhook signature."""

    pass


class UnknownWebhookAccountError(WebhookError):
    """Webhook payload targets no known active channel."""

    pass


class ConfigurationError(ChannelError):
    """Selected folder/account or credentials are not valid for the provider."""

    pass


class PreconditionError(ChannelError):
    """
    Action refused because a precondition is not met.

    `action_url` points the operator at the screen that fixes it, if any.
    """

    def __init__(self, message: str, *, action_url: str | None = None):
        self.action_url = action_url
        super().__init__(message)


class InvalidTransitionError(ChannelError):
    """Lifecycle transition not allowed from the channel's current state."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move channel from '{current}' to '{target}'")
