"""Provider controller.

Validates that the secret a provider points at exists and carries the
credentials its cloud expects, and reports whether contextual data preloading
is usable. Every failure here needs a human, so it surfaces as ActionRequired
and the chain stops without retrying.
"""

from __future__ import annotations

import logging

from .conditions import ConditionManager
from .manager import Controller
from .models import (
    CONDITION_PROVIDER_PRELOAD,
    DEFAULT_PROVIDER_CONDITIONS,
    PROVIDER_SECRET_SKIP_CHECKS,
    Provider,
    ProviderType,
    Secret,
)
from .runner import IgnoreError, Result, RunContext, Step
from .status import CONDITION_READY
from .store import get_if_exists

logger = logging.getLogger(__name__)

CONTROLLER_NAME = "provider.terraform.convergence.dev"

# Values of the skip-checks annotation that keep the secret key checks
CHECKED_VALUES = frozenset({"", "false", "False"})

AZURE_REQUIRED_KEYS = ("ARM_CLIENT_ID", "ARM_CLIENT_SECRET", "ARM_SUBSCRIPTION_ID", "ARM_TENANT_ID")
GOOGLE_CREDENTIAL_KEYS = (
    "GOOGLE_APPLICATION_CREDENTIALS",
    "GOOGLE_CREDENTIALS",
    "GOOGLE_CLOUD_KEYFILE_JSON",
    "GCLOUD_KEYFILE_JSON",
)


def missing_credentials(provider: ProviderType, data: dict[str, str]) -> str | None:
    """Describe what the secret data lacks for the provider type.

    Returns:
        A message naming the problem, or None when the data is acceptable.
    """
    match provider:
        case ProviderType.AZURE | ProviderType.AZURE_STACK:
            for key in AZURE_REQUIRED_KEYS:
                if key not in data:
                    return f"is missing the {key}"

        case ProviderType.GOOGLE:
            if not any(key in data for key in GOOGLE_CREDENTIAL_KEYS):
                return "is missing the " + ", ".join(GOOGLE_CREDENTIAL_KEYS[:-1]) + f" or {GOOGLE_CREDENTIAL_KEYS[-1]} field"

        case ProviderType.AWS:
            access_key = data.get("AWS_ACCESS_KEY_ID", "")
            secret_key = data.get("AWS_SECRET_ACCESS_KEY", "")
            if not access_key:
                return "is missing the AWS_ACCESS_KEY_ID"
            if not secret_key:
                return "is missing the AWS_SECRET_ACCESS_KEY"
            if len(access_key) > len(secret_key):
                return "aws access key is larger than secret"

    return None


class ProviderController(Controller):
    """Reconciles Provider resources."""

    name = CONTROLLER_NAME
    kind = Provider

    async def converge(self, provider: Provider) -> Result:
        return await self.run(
            provider,
            [
                self.ensure_provider_secret(provider),
                self.ensure_preload_enabled(provider),
            ],
            DEFAULT_PROVIDER_CONDITIONS,
        )

    def ensure_provider_secret(self, provider: Provider) -> Step:
        """Check the referenced secret exists and holds the expected keys."""
        cond = ConditionManager(provider, CONDITION_READY, self.recorder)

        async def step(ctx: RunContext) -> Result | None:
            reference = provider.spec.secret_ref
            if reference is None:
                return None

            location = f"{reference.namespace}/{reference.name}"
            try:
                secret = await get_if_exists(ctx.store, Secret, reference.name, reference.namespace)
            except Exception as e:
                cond.failed(e, "Failed to retrieve the provider secret")
                raise

            if secret is None:
                message = f"Provider secret ({location}) not found"
                cond.action_required(message)
                raise IgnoreError(message)

            if provider.metadata.annotations.get(PROVIDER_SECRET_SKIP_CHECKS, "") not in CHECKED_VALUES:
                return None

            problem = missing_credentials(provider.spec.provider, secret.data)
            if problem is not None:
                message = f"Provider secret ({location}) {problem}"
                cond.action_required(message)
                raise IgnoreError(message)

            return None

        return step

    def ensure_preload_enabled(self, provider: Provider) -> Step:
        """Report whether contextual data preloading applies to the provider."""
        cond = ConditionManager(provider, CONDITION_PROVIDER_PRELOAD, self.recorder)

        async def step(ctx: RunContext) -> Result | None:
            if not provider.is_preloading_enabled():
                cond.disabled("Loading contextual data is not enabled")
            elif provider.spec.provider != ProviderType.AWS:
                cond.warning("Loading contextual data is supported on AWS only")
            else:
                cond.success("Loading contextual data is enabled")
            return None

        return step
