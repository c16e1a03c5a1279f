# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Melody State Engine

Ties the pieces together:

    template -> analyze() -> per item: capture -> wrap -> store.save
                          -> per item: store.load -> unwrap -> restore

Items run one at a time in declaration order. A failing item is recorded in
the run report and the run moves on, so one unreadable hive does not cost the
rest of the backup. Every registry or file operation goes through the
ElevationCoordinator: machine-hive writes need administrator rights and are
refused, never attempted, from an unprivileged process.
"""

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from melody.core.analyzer import analyze
from melody.core.capture import get_capture
from melody.core.config import MelodyConfig, get_config, load_config
from melody.core.elevation import ElevationCoordinator, OperationType
from melody.core.encryption import MachineKey, Secret, unwrap, wrap
from melody.core.exceptions import ErrorKind, MelodyError, SecretRequiredError
from melody.core.models import OperationOutcome, PrivilegeRequirement
from melody.core.paths import ConfigPath, DirectoryPath, FilePath, RegistryPath, classify
from melody.core.privilege import PrivilegeContext
from melody.core.registry_backend import RegistryBackend
from melody.core.store import StateStore
from melody.core.template import FileItem, KeySource, OnMissing, RegistryItem, Template, load_template

logger = logging.getLogger("melody.engine")

BACKUP = "backup"
RESTORE = "restore"

PRIVILEGE_KINDS = frozenset(
    {ErrorKind.PRIVILEGE_REQUIRED, ErrorKind.ELEVATION_REQUIRED, ErrorKind.ELEVATION_FAILED}
)

TemplateItem = Union[RegistryItem, FileItem]


def operation_type_for(path: ConfigPath, write: bool) -> OperationType:
    """Privilege class of reading or writing a path."""
    if isinstance(path, RegistryPath):
        if path.hive.machine_wide:
            return OperationType.MACHINE_REGISTRY_WRITE if write else OperationType.MACHINE_REGISTRY_READ
        return OperationType.USER_REGISTRY
    return OperationType.FILE


@dataclass
class TemplateRunReport:
    """Per-item outcomes of one template backup or restore"""

    template: str
    operation: str
    requirement: PrivilegeRequirement
    outcomes: List[OperationOutcome] = field(default_factory=list)

    @property
    def failures(self) -> List[OperationOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def skipped(self) -> List[OperationOutcome]:
        return [o for o in self.outcomes if o.skipped]

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def privilege_refused(self) -> bool:
        return any(o.error_kind in PRIVILEGE_KINDS for o in self.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "template": self.template,
            "operation": self.operation,
            "requirement": self.requirement.to_dict(),
            "success": self.success,
            "summary": {
                "total": len(self.outcomes),
                "failed": len(self.failures),
                "skipped": len(self.skipped),
            },
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class StateEngine:
    """Captures and restores configuration items into a state store."""

    def __init__(
        self,
        state_dir: Optional[Union[str, Path]] = None,
        registry: Optional[RegistryBackend] = None,
        config: Optional[MelodyConfig] = None,
        coordinator: Optional[ElevationCoordinator] = None,
    ):
        self.config = config if config is not None else get_config()
        self.store = StateStore(state_dir or self.config.paths.state_dir)
        self.registry = registry
        self.coordinator = coordinator or ElevationCoordinator(config=self.config)
        self.machine_key = MachineKey(self.config.paths.key_file)

    # ========== Single items ==========

    def capture_item(
        self,
        path: Union[str, ConfigPath],
        recursive: bool = False,
        exclude_patterns: Sequence[str] = (),
        encrypt: bool = False,
        secret: Optional[Secret] = None,
        context: Optional[PrivilegeContext] = None,
    ) -> OperationOutcome:
        """
        Capture one item, encrypt it if asked, and persist it.

        Returns:
            Outcome whose value is the snapshot file path
        """
        path = classify(path) if isinstance(path, str) else path
        patterns = [*self.config.security.exclude_patterns, *exclude_patterns]

        def _capture() -> OperationOutcome:
            if encrypt and secret is None:
                raise SecretRequiredError("Item must be encrypted but no secret is available", path=path)

            snapshot = get_capture(path, self.registry).capture(
                path, recursive=recursive, exclude_patterns=patterns
            )
            snapshot = wrap(snapshot, secret if encrypt else None, self.config.security.kdf_iterations)
            target = self.store.save(snapshot)

            logger.info(f"Captured {path}{' (encrypted)' if snapshot.encrypted else ''}")
            return OperationOutcome.ok(
                "Captured",
                path=path,
                value=str(target),
                payload_hash=snapshot.payload_hash,
                encrypted=snapshot.encrypted,
                size=len(snapshot.payload),
            )

        outcome = self.coordinator.invoke_safe_admin_operation(
            _capture, operation_type=operation_type_for(path, write=False), context=context
        )
        return self._attach_path(outcome, path)

    def restore_item(
        self,
        path: Union[str, ConfigPath],
        secret: Optional[Secret] = None,
        exclude_patterns: Sequence[str] = (),
        context: Optional[PrivilegeContext] = None,
    ) -> OperationOutcome:
        """Load, decrypt and re-apply the stored snapshot of one item."""
        path = self._stored_path(path) if isinstance(path, str) else path
        patterns = [*self.config.security.exclude_patterns, *exclude_patterns]

        def _restore() -> OperationOutcome:
            snapshot = unwrap(self.store.load(path), secret)
            return get_capture(path, self.registry).restore(snapshot, exclude_patterns=patterns)

        outcome = self.coordinator.invoke_safe_admin_operation(
            _restore, operation_type=operation_type_for(path, write=True), context=context
        )
        return self._attach_path(outcome, path)

    def _stored_path(self, raw: str) -> ConfigPath:
        """Classify a raw path, preferring whichever kind has a snapshot."""
        path = classify(raw, probe=False)
        if isinstance(path, FilePath) and not self.store.exists(path):
            directory = DirectoryPath(path.path)
            if self.store.exists(directory):
                return directory
        return path

    @staticmethod
    def _attach_path(outcome: OperationOutcome, path: ConfigPath) -> OperationOutcome:
        if outcome.path is None:
            outcome = replace(outcome, path=path)
        if not outcome.success:
            kind = outcome.error_kind.value if outcome.error_kind else "Error"
            logger.error(f"{kind} on {path}: {outcome.message}")
        return outcome

    # ========== Templates ==========

    def backup_template(
        self,
        template: Template,
        secret: Optional[Secret] = None,
        context: Optional[PrivilegeContext] = None,
    ) -> TemplateRunReport:
        """Capture every backup-eligible item of a template."""
        return self._run_template(template, BACKUP, secret, context)

    def restore_template(
        self,
        template: Template,
        secret: Optional[Secret] = None,
        context: Optional[PrivilegeContext] = None,
    ) -> TemplateRunReport:
        """Restore every restore-eligible item of a template."""
        return self._run_template(template, RESTORE, secret, context)

    def _run_template(
        self,
        template: Template,
        operation: str,
        secret: Optional[Secret],
        context: Optional[PrivilegeContext],
    ) -> TemplateRunReport:
        requirement = analyze(template, context)
        report = TemplateRunReport(template=template.name, operation=operation, requirement=requirement)
        logger.info(f"Starting {operation} of '{template.name}' ({len(template.items())} items)")

        for item in template.items():
            outcome = self._run_item(template, item, operation, secret, context)
            report.outcomes.append(outcome.with_details(item=item.name))

        logger.info(
            f"Finished {operation} of '{template.name}': "
            f"{len(report.failures)} failed, {len(report.skipped)} skipped"
        )
        return report

    def _run_item(
        self,
        template: Template,
        item: TemplateItem,
        operation: str,
        secret: Optional[Secret],
        context: Optional[PrivilegeContext],
    ) -> OperationOutcome:
        path = item.config_path
        if not item.action.applies_to(operation):
            return OperationOutcome.skip(f"Item action '{item.action.value}' excludes {operation}", path=path)

        item_secret = None
        if item.encrypt:
            try:
                item_secret = self._item_secret(template, secret, operation)
            except MelodyError as e:
                logger.error(f"{e.kind.value} on {path}: {e.message}")
                return OperationOutcome.from_error(e, path=path)

        exclude = item.exclude_patterns if isinstance(item, FileItem) else ()
        if operation == BACKUP:
            recursive = item.recursive if isinstance(item, RegistryItem) else False
            outcome = self.capture_item(
                path,
                recursive=recursive,
                exclude_patterns=exclude,
                encrypt=item.encrypt,
                secret=item_secret,
                context=context,
            )
        else:
            outcome = self.restore_item(path, secret=item_secret, exclude_patterns=exclude, context=context)

        if outcome.error_kind == ErrorKind.PATH_NOT_FOUND and item.on_missing == OnMissing.SKIP:
            logger.info(f"Skipping missing item '{item.name}' ({path})")
            return OperationOutcome.skip(outcome.message, path=path, error_kind=ErrorKind.PATH_NOT_FOUND)
        return outcome

    def _item_secret(self, template: Template, secret: Optional[Secret], operation: str) -> Secret:
        if template.encryption.key_source == KeySource.MACHINE:
            if not self.config.security.machine_key:
                raise SecretRequiredError("Machine-bound keys are disabled in configuration")
            if operation == RESTORE and not self.machine_key.exists():
                raise SecretRequiredError(f"Machine key not found at {self.machine_key.key_file}")
            return self.machine_key.load_or_create()

        if secret is None:
            raise SecretRequiredError("Item must be encrypted but no secret was supplied")
        return secret


# =============================================================================
# Elevated task entry points
# =============================================================================


def _task_engine(state_dir: str, key_file: Optional[str], config_file: Optional[str]) -> StateEngine:
    config = load_config(Path(config_file) if config_file else None)
    if key_file:
        config.paths.key_file = Path(key_file)
    return StateEngine(state_dir=state_dir, config=config)


def run_backup_task(
    template: str,
    state_dir: str,
    secret: Optional[str] = None,
    key_file: Optional[str] = None,
    config_file: Optional[str] = None,
) -> Dict[str, Any]:
    """Back up a template file; returns the report as a dict."""
    engine = _task_engine(state_dir, key_file, config_file)
    return engine.backup_template(load_template(template), secret=secret).to_dict()


def run_restore_task(
    template: str,
    state_dir: str,
    secret: Optional[str] = None,
    key_file: Optional[str] = None,
    config_file: Optional[str] = None,
) -> Dict[str, Any]:
    """Restore a template file; returns the report as a dict."""
    engine = _task_engine(state_dir, key_file, config_file)
    return engine.restore_template(load_template(template), secret=secret).to_dict()
