"""Pydantic schemas for validating app specs coming from the request layer."""

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from rserve_engine.core.models import AppSpec, GitSource, UploadSource


SLUG_PATTERN = r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$"


# ============================================
# Code Source Schemas
# ============================================

class GitSourceSchema(BaseModel):
    type: Literal["git"] = "git"
    repo_url: str = Field(..., min_length=1)
    branch: Optional[str] = None


class UploadSourceSchema(BaseModel):
    type: Literal["upload"] = "upload"


# ============================================
# App Spec Schema
# ============================================

class AppSpecSchema(BaseModel):
    """Schema for an app declaration."""

    app_id: str = Field(..., min_length=1)
    slug: str = Field(..., pattern=SLUG_PATTERN)
    name: Optional[str] = None
    r_version: str = Field(..., min_length=1)
    packages: List[str] = Field(default_factory=list)
    code_source: Union[GitSourceSchema, UploadSourceSchema] = Field(..., discriminator="type")
    entry_script: str = Field(default="run_rserve.R", min_length=1)
    replicas: int = Field(default=1, ge=1, le=16)

    model_config = ConfigDict(from_attributes=True)

    @field_validator("packages")
    @classmethod
    def strip_packages(cls, packages: List[str]) -> List[str]:
        cleaned = [p.strip() for p in packages if p and p.strip()]
        for pkg in cleaned:
            if "'" in pkg or '"' in pkg:
                raise ValueError(f"invalid package name: {pkg}")
        return cleaned

    def to_domain(self) -> AppSpec:
        if isinstance(self.code_source, GitSourceSchema):
            source = GitSource(repo_url=self.code_source.repo_url, branch=self.code_source.branch)
        else:
            source = UploadSource()

        return AppSpec(
            app_id=self.app_id,
            slug=self.slug,
            name=self.name,
            r_version=self.r_version,
            packages=list(self.packages),
            code_source=source,
            entry_script=self.entry_script,
            replicas=self.replicas,
        )
