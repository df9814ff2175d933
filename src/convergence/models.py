"""Pydantic models for the resource kinds the controllers reconcile.

These models provide:
1. Object identity and metadata shared by every kind (ObjectMeta)
2. A common status contract (Resource / StatusAware) the core depends on
3. The concrete kinds: Configuration, CloudResource, Plan, Revision, Provider, Secret

The core never imports a concrete kind; it only relies on StatusAware.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, NamedTuple, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from .status import CONDITION_READY, CommonStatus, ConditionSpec

API_GROUP = "terraform.convergence.dev"
API_VERSION = f"{API_GROUP}/v1alpha1"

# Finalizer the store adds itself during foreground cascading deletion
FINALIZER_DELETE_DEPENDENTS = "foregroundDeletion"

# Annotation stamped on a configuration to trigger a drift check
DRIFT_ANNOTATION = f"{API_GROUP}/drift"
# Annotation on a provider to skip validation of the secret keys
PROVIDER_SECRET_SKIP_CHECKS = f"providers.{API_GROUP}/skip-checks"

CLOUD_RESOURCE_NAME_LABEL = f"{API_GROUP}/cloud-resource-name"
REVISION_PLAN_NAME_LABEL = f"{API_GROUP}/plan"
REVISION_LABEL = f"{API_GROUP}/revision"
REVISION_NAME_LABEL = f"{API_GROUP}/revision-name"


class ObjectKey(NamedTuple):
    """Identity of an object within its kind."""

    name: str
    namespace: str | None = None

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name


# =============================================================================
# Metadata
# =============================================================================


class OwnerReference(BaseModel):
    """Reference to the object owning this one."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str
    name: str
    uid: str | None = None


class ObjectMeta(BaseModel):
    """Standard object metadata."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str = ""
    namespace: str | None = None
    generate_name: str | None = Field(None, alias="generateName")
    uid: str | None = None
    generation: int = 0
    resource_version: str | None = Field(None, alias="resourceVersion")
    creation_timestamp: datetime | None = Field(None, alias="creationTimestamp")
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    finalizers: list[str] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    owner_references: list[OwnerReference] = Field(default_factory=list, alias="ownerReferences")


class ApiObject(BaseModel):
    """Base for every object held by the resource store."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    kind: ClassVar[str] = ""
    namespaced: ClassVar[bool] = True

    api_version: str = Field(API_VERSION, alias="apiVersion")
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str | None:
        return self.metadata.namespace

    @property
    def generation(self) -> int:
        return self.metadata.generation

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.metadata.name, self.metadata.namespace)

    def is_deleting(self) -> bool:
        """True once the store has marked the object for deletion."""
        return self.metadata.deletion_timestamp is not None

    def to_manifest(self) -> dict[str, Any]:
        """Serialize to the wire representation (camelCase, kind included)."""
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        data["kind"] = self.kind
        return data


@runtime_checkable
class StatusAware(Protocol):
    """Any resource carrying the common status.

    The convergence core depends only on this contract, never on a concrete kind.
    """

    kind: ClassVar[str]
    metadata: ObjectMeta

    @property
    def generation(self) -> int: ...

    @property
    def key(self) -> ObjectKey: ...

    def get_common_status(self) -> CommonStatus: ...

    def is_deleting(self) -> bool: ...


class Resource(ApiObject):
    """An ApiObject with a desired spec and an observed common status."""

    status: CommonStatus = Field(default_factory=CommonStatus)

    def get_common_status(self) -> CommonStatus:
        return self.status


# =============================================================================
# Shared spec fragments
# =============================================================================


class SecretReference(BaseModel):
    """Reference to a secret by name and namespace."""

    model_config = {"extra": "ignore"}

    name: str
    namespace: str | None = None


class ProviderReference(BaseModel):
    """Reference to a cluster-scoped Provider."""

    model_config = {"extra": "ignore"}

    name: str


class PlanReference(BaseModel):
    """Reference to a plan and the revision version to use."""

    model_config = {"extra": "ignore"}

    name: str
    revision: str


class ValueFromSource(BaseModel):
    """A variable sourced from a secret or context."""

    model_config = {"extra": "ignore"}

    key: str
    name: str | None = None
    secret: str | None = None
    context: str | None = None
    optional: bool = False


class WriteConnectionSecret(BaseModel):
    """Where outputs are written once applied."""

    model_config = {"extra": "ignore"}

    name: str
    keys: list[str] = Field(default_factory=list)


# =============================================================================
# Configuration
# =============================================================================

CONDITION_PROVIDER_READY = "ProviderReady"
CONDITION_TERRAFORM_PLAN = "TerraformPlan"
CONDITION_TERRAFORM_POLICY = "SecurityPolicy"
CONDITION_TERRAFORM_APPLY = "TerraformApply"

DEFAULT_CONFIGURATION_CONDITIONS: list[ConditionSpec] = [
    ConditionSpec(type=CONDITION_PROVIDER_READY, name="Provider ready"),
    ConditionSpec(type=CONDITION_TERRAFORM_PLAN, name="Terraform Plan"),
    ConditionSpec(type=CONDITION_TERRAFORM_POLICY, name="Security Policy"),
    ConditionSpec(type=CONDITION_TERRAFORM_APPLY, name="Terraform Apply"),
    ConditionSpec(type=CONDITION_READY, name="Ready"),
]


class ResourceStatus(str, Enum):
    """Coarse state of the cloud resources behind a configuration."""

    DESTROYING = "Deleting"
    DESTROYING_FAILED = "DeletionFailed"
    RESOURCES_READY = "Ready"
    RESOURCES_OUT_OF_SYNC = "OutOfSync"


class ConfigurationSpec(BaseModel):
    """Desired state of a configuration."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    module: str = ""
    enable_auto_approval: bool = Field(False, alias="enableAutoApproval")
    enable_drift_detection: bool = Field(False, alias="enableDriftDetection")
    plan: PlanReference | None = None
    provider_ref: ProviderReference | None = Field(None, alias="providerRef")
    terraform_version: str | None = Field(None, alias="terraformVersion")
    value_from: list[ValueFromSource] = Field(default_factory=list, alias="valueFrom")
    variables: dict[str, Any] | None = None
    write_connection_secret_to_ref: WriteConnectionSecret | None = Field(
        None, alias="writeConnectionSecretToRef"
    )


class ConfigurationStatus(CommonStatus):
    """Observed state of a configuration."""

    resource_status: ResourceStatus | None = Field(None, alias="resourceStatus")
    resources: int | None = None


class Configuration(Resource):
    """A terraform module instance; the drift controller's subject."""

    kind: ClassVar[str] = "Configuration"

    spec: ConfigurationSpec = Field(default_factory=ConfigurationSpec)
    status: ConfigurationStatus = Field(default_factory=ConfigurationStatus)


# =============================================================================
# CloudResource
# =============================================================================

CONDITION_CONFIGURATION_READY = "ConfigurationReady"
CONDITION_CONFIGURATION_STATUS = "ConfigurationStatus"

DEFAULT_CLOUD_RESOURCE_CONDITIONS: list[ConditionSpec] = [
    ConditionSpec(type=CONDITION_CONFIGURATION_READY, name="Configuration Ready"),
    ConditionSpec(type=CONDITION_CONFIGURATION_STATUS, name="Configuration Status"),
    *DEFAULT_CONFIGURATION_CONDITIONS,
]


class CloudResourceSpec(BaseModel):
    """Desired state of a cloud resource: a plan revision plus overrides."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    plan: PlanReference
    enable_auto_approval: bool = Field(False, alias="enableAutoApproval")
    enable_drift_detection: bool = Field(False, alias="enableDriftDetection")
    provider_ref: ProviderReference | None = Field(None, alias="providerRef")
    terraform_version: str | None = Field(None, alias="terraformVersion")
    value_from: list[ValueFromSource] = Field(default_factory=list, alias="valueFrom")
    variables: dict[str, Any] | None = None
    write_connection_secret_to_ref: WriteConnectionSecret | None = Field(
        None, alias="writeConnectionSecretToRef"
    )


class CloudResourceStatus(CommonStatus):
    """Observed state of a cloud resource."""

    configuration_name: str | None = Field(None, alias="configurationName")
    resource_status: ResourceStatus | None = Field(None, alias="resourceStatus")
    resources: int | None = None
    update_available: str | None = Field(None, alias="updateAvailable")


class CloudResource(Resource):
    """Consumer-facing resource provisioned from a plan revision."""

    kind: ClassVar[str] = "CloudResource"

    spec: CloudResourceSpec
    status: CloudResourceStatus = Field(default_factory=CloudResourceStatus)


# =============================================================================
# Plan
# =============================================================================

DEFAULT_PLAN_CONDITIONS: list[ConditionSpec] = [
    ConditionSpec(type=CONDITION_READY, name="Ready"),
]


class PlanRevision(BaseModel):
    """A named revision and its semantic version."""

    model_config = {"extra": "ignore"}

    name: str
    version: str


class PlanSpec(BaseModel):
    """Collection of revisions published under a plan."""

    model_config = {"extra": "ignore"}

    revisions: list[PlanRevision] = Field(default_factory=list)


class PlanStatus(CommonStatus):
    """Observed state of a plan."""

    latest: PlanRevision | None = None


class Plan(Resource):
    """Cluster-scoped index of the revisions of a configuration template."""

    kind: ClassVar[str] = "Plan"
    namespaced: ClassVar[bool] = False

    spec: PlanSpec = Field(default_factory=PlanSpec)
    status: PlanStatus = Field(default_factory=PlanStatus)

    def list_versions(self) -> list[str]:
        return [revision.version for revision in self.spec.revisions]

    def get_revision(self, version: str) -> PlanRevision | None:
        for revision in self.spec.revisions:
            if revision.version == version:
                return revision
        return None

    def has_revision(self, version: str) -> bool:
        return self.get_revision(version) is not None

    def remove_revision(self, version: str) -> None:
        self.spec.revisions = [r for r in self.spec.revisions if r.version != version]


# =============================================================================
# Revision
# =============================================================================

DEFAULT_REVISION_CONDITIONS: list[ConditionSpec] = [
    ConditionSpec(type=CONDITION_READY, name="Ready"),
]


class RevisionPlan(BaseModel):
    """The plan a revision belongs to and its version within it."""

    model_config = {"extra": "ignore"}

    name: str
    revision: str


class InputDefault(BaseModel):
    """Default value wrapper for a revision input."""

    model_config = {"extra": "ignore"}

    value: Any = None


class RevisionInput(BaseModel):
    """A user-facing input exposed by a revision."""

    model_config = {"extra": "ignore"}

    key: str
    description: str = ""
    required: bool = False
    default: InputDefault | None = None


class RevisionConfiguration(BaseModel):
    """Configuration template a revision stamps out."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    module: str
    enable_auto_approval: bool = Field(False, alias="enableAutoApproval")
    enable_drift_detection: bool = Field(False, alias="enableDriftDetection")
    provider_ref: ProviderReference | None = Field(None, alias="providerRef")
    terraform_version: str | None = Field(None, alias="terraformVersion")
    value_from: list[ValueFromSource] = Field(default_factory=list, alias="valueFrom")
    variables: dict[str, Any] | None = None
    write_connection_secret_to_ref: WriteConnectionSecret | None = Field(
        None, alias="writeConnectionSecretToRef"
    )


class RevisionSpec(BaseModel):
    """Desired state of a revision."""

    model_config = {"extra": "ignore"}

    plan: RevisionPlan
    configuration: RevisionConfiguration
    inputs: list[RevisionInput] = Field(default_factory=list)


class RevisionStatus(CommonStatus):
    """Observed state of a revision."""

    in_use: int = Field(0, alias="inUse")


class Revision(Resource):
    """A versioned configuration template."""

    kind: ClassVar[str] = "Revision"
    namespaced: ClassVar[bool] = False

    spec: RevisionSpec
    status: RevisionStatus = Field(default_factory=RevisionStatus)


# =============================================================================
# Provider
# =============================================================================

CONDITION_PROVIDER_PRELOAD = "ProviderPreload"

DEFAULT_PROVIDER_CONDITIONS: list[ConditionSpec] = [
    ConditionSpec(type=CONDITION_READY, name="Ready"),
    ConditionSpec(type=CONDITION_PROVIDER_PRELOAD, name="Provider Preload"),
]


class ProviderType(str, Enum):
    """Cloud provider backing a Provider."""

    ALICLOUD = "alicloud"
    AWS = "aws"
    AZURE = "azurerm"
    AZURE_AD = "azuread"
    AZURE_STACK = "azurestack"
    GOOGLE = "google"
    GOOGLE_WORKSPACE = "googleworkspace"
    KUBERNETES = "kubernetes"


class SourceType(str, Enum):
    """Where a provider takes its credentials from."""

    SECRET = "secret"
    INJECTED = "injected"


class PreloadSpec(BaseModel):
    """Contextual data preloading options."""

    model_config = {"extra": "ignore"}

    enabled: bool = False
    region: str | None = None


class ProviderSpec(BaseModel):
    """Desired state of a provider."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    provider: ProviderType
    source: SourceType = SourceType.SECRET
    secret_ref: SecretReference | None = Field(None, alias="secretRef")
    preload: PreloadSpec | None = None


class Provider(Resource):
    """Cloud credentials made available to configurations."""

    kind: ClassVar[str] = "Provider"
    namespaced: ClassVar[bool] = False

    spec: ProviderSpec

    def is_preloading_enabled(self) -> bool:
        return self.spec.preload is not None and self.spec.preload.enabled


# =============================================================================
# Secret
# =============================================================================


class Secret(ApiObject):
    """Opaque key/value data; not reconciled, only read."""

    kind: ClassVar[str] = "Secret"

    api_version: str = Field("v1", alias="apiVersion")
    data: dict[str, str] = Field(default_factory=dict)


# =============================================================================
# Kind Registry
# =============================================================================

KIND_TO_MODEL: dict[str, type[ApiObject]] = {
    "CloudResource": CloudResource,
    "Configuration": Configuration,
    "Plan": Plan,
    "Provider": Provider,
    "Revision": Revision,
    "Secret": Secret,
}


def get_model_class(kind: str) -> type[ApiObject]:
    """Get the model class for a kind.

    Args:
        kind: Kind name, e.g. "Plan".

    Returns:
        The model class.

    Raises:
        ValueError: If the kind is unknown.
    """
    if kind not in KIND_TO_MODEL:
        valid = sorted(KIND_TO_MODEL.keys())
        raise ValueError(f"Unknown kind '{kind}'. Must be one of: {valid}")
    return KIND_TO_MODEL[kind]
