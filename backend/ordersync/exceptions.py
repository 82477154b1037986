"""Order sync exceptions.

WHAT:
    Exception hierarchy for the order sync pipeline.

WHY:
    The orchestrator decides what to do with a failure by its class:
    - ConfigurationError: fatal for the tenant/order, never retried
    - TransientSyncError: retried with backoff up to the ceiling
    Duplicate-key failures never surface here; the materializer turns
    them into a skip.
"""


class OrderSyncError(Exception):
    """Base exception for the order sync pipeline."""

    def __init__(self, message: str, workspace_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.workspace_id = workspace_id


# =============================================================================
# CONFIGURATION ERRORS (not retried)
# =============================================================================

class ConfigurationError(OrderSyncError):
    """Tenant setup is incomplete; retrying cannot help."""


class ConnectionNotFoundError(ConfigurationError):
    """No active storefront connection for the workspace."""

    def __init__(self, workspace_id: str, provider: str = "shopify"):
        super().__init__(
            f"No active {provider} connection for workspace {workspace_id}",
            workspace_id=workspace_id,
        )
        self.provider = provider


class PrimaryHubNotFoundError(ConfigurationError):
    """Workspace has no primary, active fulfillment hub."""

    def __init__(self, workspace_id: str):
        super().__init__(
            f"No primary active hub configured for workspace {workspace_id}",
            workspace_id=workspace_id,
        )


# =============================================================================
# TRANSIENT ERRORS (retried with backoff)
# =============================================================================

class TransientSyncError(OrderSyncError):
    """Failure expected to clear on retry (timeouts, rate limits)."""


class MaterializationTimeoutError(TransientSyncError):
    """Order transaction exceeded its time budget and was rolled back."""

    def __init__(self, external_order_id: str, timeout_seconds: float):
        super().__init__(
            f"Materializing order {external_order_id} exceeded {timeout_seconds}s"
        )
        self.external_order_id = external_order_id
        self.timeout_seconds = timeout_seconds
