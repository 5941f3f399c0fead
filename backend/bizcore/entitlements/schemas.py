"""
Pydantic schemas for the catalog YAML file (config/catalog.yml).

Shape validation only. Referential checks (unknown permission codes,
empty roles, legacy mappings pointing at unknown modules) happen in
InMemoryCatalogSource so that every catalog construction path gets them.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bizcore.entitlements.models import Scope


class PermissionSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str = Field(..., min_length=3)
    description: Optional[str] = None
    deprecated: bool = False

    @field_validator("code")
    @classmethod
    def code_is_resource_action(cls, v: str) -> str:
        if "." not in v:
            raise ValueError(f"permission code '{v}' must look like 'resource.action'")
        return v


class RoleSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: Optional[str] = None
    tenant_id: Optional[str] = None
    permissions: list[str] = Field(default_factory=list)


class GrantSchema(BaseModel):
    """Plan or add-on: a code plus the permissions it grants."""

    model_config = ConfigDict(extra="forbid")

    code: str
    name: Optional[str] = None
    permissions: list[str] = Field(default_factory=list)


class AddonSchema(GrantSchema):
    """Add-on grant. `requires` lists prerequisite add-ons, any one of which suffices."""

    requires: list[str] = Field(default_factory=list)


class RegistryEntrySchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str
    name: Optional[str] = None
    scope: Scope = Scope.TENANT
    default_enabled: bool = False
    module: Optional[str] = None


class MappingEntrySchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str
    default_enabled: bool = True
    is_required: bool = False
    display_order: int = 0


class BusinessTypeSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str
    name: Optional[str] = None
    requires_versioning: bool = False
    modules: list[MappingEntrySchema] = Field(default_factory=list)
    features: list[MappingEntrySchema] = Field(default_factory=list)


class CatalogSchema(BaseModel):
    """Top-level catalog document."""

    model_config = ConfigDict(extra="forbid")

    version: str = "1"
    permissions: list[PermissionSchema] = Field(default_factory=list)
    roles: list[RoleSchema] = Field(default_factory=list)
    plans: list[GrantSchema] = Field(default_factory=list)
    addons: list[AddonSchema] = Field(default_factory=list)
    modules: list[RegistryEntrySchema] = Field(default_factory=list)
    features: list[RegistryEntrySchema] = Field(default_factory=list)
    business_types: list[BusinessTypeSchema] = Field(default_factory=list)
