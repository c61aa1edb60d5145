from __future__ import annotations


class DomainError(Exception):
    """Base for domain errors."""


class InvalidPlanError(DomainError):
    """Plan tier is not one of free, gold or platinum."""


class InvalidEntitlementPatchError(DomainError):
    """Patch touches an unknown field or carries an invalid value."""


class EntitlementStoreUnavailableError(DomainError):
    """Entitlement store could not be reached or timed out."""


class BillingError(DomainError):
    """Billing provider interaction failed."""


class WebhookSignatureError(BillingError):
    """Webhook signature did not verify."""


class MalformedBillingEventError(BillingError):
    """Webhook event lacks the data needed to correlate it to a user."""


class BillingProviderError(BillingError):
    """Billing provider API call failed."""


class NoActiveSubscriptionError(BillingError):
    """User has no active subscription with the billing provider."""
