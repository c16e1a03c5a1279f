# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Backup template schema.

Templates are YAML documents owned by callers:

    metadata:
      name: "Sound Settings"
    registry:
      - name: "Windows Audio Settings"
        path: 'HKCU:\\Software\\Microsoft\\Multimedia\\Audio'
        type: key
    files:
      - name: "SSH config"
        path: "$env:USERPROFILE/.ssh/config"
        type: file
        encrypt: true
    features:
      - name: "Microsoft-Windows-Subsystem-Linux"
        type: optional_feature

Every item path is classified when the template is validated, so a bad path
fails the load instead of a capture halfway through a run. Sections the engine
does not act on (prerequisites, applications, stages, ...) are ignored.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from melody.core.exceptions import InvalidPathError, TemplateError
from melody.core.paths import ConfigPath, DirectoryPath, FilePath, RegistryPath, classify

logger = logging.getLogger("melody.template")


class ItemAction(str, Enum):
    SYNC = "sync"
    BACKUP = "backup"
    RESTORE = "restore"

    def applies_to(self, operation: str) -> bool:
        return self is ItemAction.SYNC or self.value == operation


class OnMissing(str, Enum):
    SKIP = "skip"
    FAIL = "fail"


class KeySource(str, Enum):
    SECRET = "secret"
    MACHINE = "machine"


class TemplateMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = "unnamed"
    description: str = ""
    version: str = "1.0.0"
    author: str = ""
    category: str = ""
    tags: List[str] = Field(default_factory=list)


class _Item(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    path: str
    encrypt: bool = False
    action: ItemAction = ItemAction.SYNC
    on_missing: OnMissing = OnMissing.SKIP

    # Filled in by validation; overwritten even if a document supplies it
    config_path: Any = Field(default=None, exclude=True)

    def _classify(self, **kwargs) -> ConfigPath:
        try:
            return classify(self.path, **kwargs)
        except InvalidPathError as e:
            raise ValueError(f"{self.name}: {e}") from e


class RegistryItem(_Item):
    type: str = Field(default="key", pattern="^(key|value)$")
    key_name: Optional[str] = None
    recursive: bool = False

    @model_validator(mode="after")
    def _resolve_path(self) -> "RegistryItem":
        path = self._classify(probe=False)
        if not isinstance(path, RegistryPath):
            raise ValueError(f"{self.name}: registry item path must start with a hive")
        if self.type == "value":
            if not self.key_name:
                raise ValueError(f"{self.name}: value items need key_name")
            path = path.with_value(self.key_name)
        self.config_path = path
        return self


class FileItem(_Item):
    type: str = Field(default="file", pattern="^(file|directory)$")
    exclude_patterns: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _resolve_path(self) -> "FileItem":
        path = self._classify(kind=self.type)
        if not isinstance(path, (FilePath, DirectoryPath)):
            raise ValueError(f"{self.name}: file item path points into the registry")
        self.config_path = path
        return self


class FeatureItem(BaseModel):
    """Declared Windows feature or capability install"""

    model_config = ConfigDict(extra="ignore")

    name: str
    type: str = Field(default="feature", pattern="^(feature|capability|optional_feature)$")
    requires_admin: bool = True


class EncryptionPolicy(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key_source: KeySource = KeySource.SECRET


class Template(BaseModel):
    model_config = ConfigDict(extra="ignore")

    metadata: TemplateMetadata = Field(default_factory=TemplateMetadata)
    registry: List[RegistryItem] = Field(default_factory=list)
    files: List[FileItem] = Field(default_factory=list)
    features: List[FeatureItem] = Field(default_factory=list)
    encryption: EncryptionPolicy = Field(default_factory=EncryptionPolicy)

    @property
    def name(self) -> str:
        return self.metadata.name

    def items(self) -> List[Union[RegistryItem, FileItem]]:
        """Capture/restore items in declaration order, registry first."""
        return [*self.registry, *self.files]


def parse_template(data: Optional[Dict[str, Any]], source: Optional[str] = None) -> Template:
    """
    Validate a template document.

    Raises:
        TemplateError: structure or a path is invalid
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise TemplateError("Template must be a mapping", path=source)

    try:
        # null sections in YAML ("files:" with nothing under it)
        cleaned = {k: v for k, v in data.items() if v is not None}
        template = Template(**cleaned)
    except ValidationError as e:
        errors = [
            {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
            for err in e.errors()
        ]
        first = errors[0] if errors else {"loc": "", "msg": str(e)}
        raise TemplateError(
            f"Invalid template: {first['loc']}: {first['msg']}",
            item=first["loc"],
            path=source,
            details={"errors": errors},
            cause=e,
        )

    logger.debug(
        f"Parsed template '{template.name}': {len(template.registry)} registry, "
        f"{len(template.files)} files, {len(template.features)} features"
    )
    return template


def load_template(path: Union[str, Path]) -> Template:
    """Load and validate a YAML template file."""
    file_path = Path(path)
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise TemplateError(f"Cannot read template: {e}", path=str(file_path), cause=e)
    except yaml.YAMLError as e:
        raise TemplateError(f"Template is not valid YAML: {e}", path=str(file_path), cause=e)

    return parse_template(data, source=str(file_path))
