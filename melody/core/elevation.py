# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Melody Elevation Coordinator

Two entry points decide how privileged work runs:

invoke_safe_admin_operation(main, fallback, operation_type)
    NOT_STARTED -> EVALUATING -> RUN_MAIN | RUN_FALLBACK | REFUSE -> DONE

    main runs when the operation type does not need admin rights or the
    process is elevated. Otherwise the fallback runs (the outcome is marked
    degraded), or the call is refused with PrivilegeRequired. main is never
    attempted speculatively.

invoke_with_elevation(task, what_if, no_prompt)
    what_if is honoured before anything else. An elevated process runs the
    task in-process; otherwise no_prompt fails with ElevationRequired, and
    the default is to relaunch the worker through an ElevationLauncher and
    block until it exits.

Relaunch protocol: a private temp directory holds request.json (the task)
and result.json (written atomically by the child). The parent only trusts
result.json after the child has exited with status 0.
"""

import importlib
import json
import logging
import platform
import re
import shutil
import subprocess
import sys
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from melody.core.exceptions import (
    ElevationFailedError,
    ElevationRequiredError,
    MelodyError,
    PrivilegeCheckError,
    PrivilegeRequiredError,
    error_from_dict,
)
from melody.core.models import OperationOutcome
from melody.core.privilege import PrivilegeContext, resolve_context

logger = logging.getLogger("melody.elevation")

WORKER_MODULE = "melody.core.elevation_worker"
REQUEST_FILE = "request.json"
RESULT_FILE = "result.json"


# =============================================================================
# Operation types and states
# =============================================================================


class OperationType(str, Enum):
    READ = "read"
    USER_REGISTRY = "user_registry"
    FILE = "file"
    MACHINE_REGISTRY_READ = "machine_registry_read"
    MACHINE_REGISTRY_WRITE = "machine_registry_write"
    FEATURE_INSTALL = "feature_install"
    SERVICE_CONFIG = "service_config"

    @property
    def requires_admin(self) -> bool:
        return self in _ADMIN_OPERATIONS


_ADMIN_OPERATIONS = frozenset(
    {
        OperationType.MACHINE_REGISTRY_WRITE,
        OperationType.FEATURE_INSTALL,
        OperationType.SERVICE_CONFIG,
    }
)


class CoordinatorState(str, Enum):
    NOT_STARTED = "not_started"
    EVALUATING = "evaluating"
    RUN_MAIN = "run_main"
    RUN_FALLBACK = "run_fallback"
    REFUSE = "refuse"
    DONE = "done"


# =============================================================================
# Elevated tasks
# =============================================================================

_TARGET_RE = re.compile(r"^[A-Za-z_][\w.]*:[A-Za-z_]\w*$")


@dataclass(frozen=True)
class ElevatedTask:
    """
    Work that may run in another process.

    target is "package.module:function"; kwargs and the return value must be
    JSON-serializable.
    """

    target: str
    kwargs: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not _TARGET_RE.match(self.target):
            raise ValueError(f"Invalid task target '{self.target}', expected 'module:function'")

    def resolve(self) -> Callable[..., Any]:
        module_name, func_name = self.target.split(":", 1)
        module = importlib.import_module(module_name)
        return getattr(module, func_name)

    def run(self) -> Any:
        return self.resolve()(**self.kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {"target": self.target, "kwargs": self.kwargs}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ElevatedTask":
        return cls(target=data["target"], kwargs=dict(data.get("kwargs") or {}))


# =============================================================================
# Launchers
# =============================================================================


class ElevationLauncher(ABC):
    """Starts the worker command line with elevated rights and waits for it."""

    name = "launcher"

    @abstractmethod
    def command(self, argv: List[str]) -> List[str]:
        """Wrap the worker argv in the platform's elevation command."""

    def launch(self, argv: List[str]) -> int:
        cmd = self.command(argv)
        logger.info(f"Launching elevated worker via {self.name}")
        logger.debug(f"Elevation command: {cmd}")
        try:
            completed = subprocess.run(cmd, check=False)
        except OSError as e:
            raise ElevationFailedError(f"Cannot start {self.name}: {e}", cause=e)
        return completed.returncode


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class RunAsLauncher(ElevationLauncher):
    """Windows UAC prompt through PowerShell Start-Process -Verb RunAs."""

    name = "runas"

    def command(self, argv: List[str]) -> List[str]:
        executable, *args = argv
        # Start-Process joins ArgumentList with spaces, so each argument is pre-quoted
        arg_list = ",".join(_ps_quote(f'"{a}"') for a in args)
        script = (
            f"$p = Start-Process -FilePath {_ps_quote(executable)} -ArgumentList {arg_list} "
            f"-Verb RunAs -Wait -PassThru -WindowStyle Hidden; exit $p.ExitCode"
        )
        return ["powershell.exe", "-NoProfile", "-NonInteractive", "-Command", script]


class SudoLauncher(ElevationLauncher):
    name = "sudo"

    def command(self, argv: List[str]) -> List[str]:
        return ["sudo", "--", *argv]


class PkexecLauncher(ElevationLauncher):
    name = "pkexec"

    def command(self, argv: List[str]) -> List[str]:
        return ["pkexec", *argv]


class DirectLauncher(ElevationLauncher):
    """Runs the worker without changing privileges (already-root services, tests)."""

    name = "direct"

    def command(self, argv: List[str]) -> List[str]:
        return list(argv)


LAUNCHERS = {
    "runas": RunAsLauncher,
    "sudo": SudoLauncher,
    "pkexec": PkexecLauncher,
    "direct": DirectLauncher,
}


def default_launcher(config=None) -> ElevationLauncher:
    """
    Pick a launcher from config.elevation.launcher, or by platform for "auto".

    Raises:
        ElevationFailedError: no usable launcher on this system
    """
    name = config.elevation.launcher if config is not None else "auto"
    if name != "auto":
        return LAUNCHERS[name]()

    if platform.system() == "Windows":
        return RunAsLauncher()
    for candidate in ("sudo", "pkexec"):
        if shutil.which(candidate):
            return LAUNCHERS[candidate]()
    raise ElevationFailedError("No elevation launcher available (install sudo or pkexec)")


# =============================================================================
# Coordinator
# =============================================================================


class ElevationCoordinator:
    """Runs privileged work directly, through a fallback, or in an elevated child."""

    def __init__(
        self,
        launcher: Optional[ElevationLauncher] = None,
        config=None,
        python_executable: Optional[str] = None,
        temp_dir: Optional[Path] = None,
    ):
        self.config = config
        self._launcher = launcher
        elevation = config.elevation if config is not None else None
        self.python_executable = python_executable or (elevation and elevation.python_executable) or sys.executable
        self.temp_dir = temp_dir or (config.paths.temp_dir if config is not None else None)

    @property
    def launcher(self) -> ElevationLauncher:
        if self._launcher is None:
            self._launcher = default_launcher(self.config)
        return self._launcher

    # ========== Safe admin operation ==========

    def invoke_safe_admin_operation(
        self,
        main: Callable[[], Any],
        fallback: Optional[Callable[[], Any]] = None,
        operation_type: OperationType = OperationType.READ,
        context: Optional[PrivilegeContext] = None,
    ) -> OperationOutcome:
        """
        Run ``main`` if privileges allow, else ``fallback``, else refuse.

        Callables may return an OperationOutcome or a plain value. MelodyErrors
        they raise are reported as failed outcomes; anything else propagates.
        """
        trace = [CoordinatorState.NOT_STARTED, CoordinatorState.EVALUATING]

        if not operation_type.requires_admin:
            state = CoordinatorState.RUN_MAIN
        elif resolve_context(context).elevated:
            state = CoordinatorState.RUN_MAIN
        elif fallback is not None:
            state = CoordinatorState.RUN_FALLBACK
        else:
            state = CoordinatorState.REFUSE
        trace.append(state)

        if state == CoordinatorState.REFUSE:
            logger.warning(f"Refusing {operation_type.value}: administrator rights required")
            outcome = OperationOutcome.from_error(
                PrivilegeRequiredError(
                    f"Operation '{operation_type.value}' requires administrator rights",
                    details={"operation_type": operation_type.value},
                )
            )
        else:
            call = main if state == CoordinatorState.RUN_MAIN else fallback
            outcome = self._call(call)
            if state == CoordinatorState.RUN_FALLBACK:
                logger.info(f"Ran degraded fallback for {operation_type.value}")
                outcome = outcome.with_details(degraded=True)

        trace.append(CoordinatorState.DONE)
        return outcome.with_details(
            operation_type=operation_type.value,
            branch=state.value,
            trace=[s.value for s in trace],
        )

    @staticmethod
    def _call(func: Callable[[], Any]) -> OperationOutcome:
        try:
            result = func()
        except PrivilegeCheckError:
            raise
        except MelodyError as e:
            logger.debug(f"{e.kind.value if e.kind else 'Error'}: {e}")
            return OperationOutcome.from_error(e)

        if isinstance(result, OperationOutcome):
            return result
        return OperationOutcome.ok(value=result)

    # ========== Elevation ==========

    def invoke_with_elevation(
        self,
        task: ElevatedTask,
        what_if: bool = False,
        no_prompt: bool = False,
        context: Optional[PrivilegeContext] = None,
    ) -> OperationOutcome:
        """
        Run a task with administrator rights.

        Returns:
            Outcome whose value is the task's return value
        """
        if what_if:
            logger.info(f"What-if: {task.target} not executed")
            return OperationOutcome.skip("What-if: task not executed", target=task.target, mode="what_if")

        if resolve_context(context).elevated:
            outcome = self._call(task.run)
            return outcome.with_details(target=task.target, mode="in_process")

        if no_prompt:
            error = ElevationRequiredError(
                f"Task '{task.target}' requires elevation and prompting is disabled",
                details={"target": task.target},
            )
            logger.warning(str(error))
            return OperationOutcome.from_error(error, mode="refused")

        try:
            value = self._relaunch(task)
        except PrivilegeCheckError:
            raise
        except MelodyError as e:
            logger.error(f"Elevated task {task.target} failed: {e}")
            return OperationOutcome.from_error(e, target=task.target, mode="relaunched")
        return OperationOutcome.ok(f"Elevated task {task.target} completed", value=value, target=task.target, mode="relaunched")

    def _relaunch(self, task: ElevatedTask) -> Any:
        if self.temp_dir is not None:
            Path(self.temp_dir).mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(
            prefix="melody-elevate-", dir=self.temp_dir, ignore_cleanup_errors=True
        ) as channel:
            request_file = Path(channel) / REQUEST_FILE
            result_file = Path(channel) / RESULT_FILE
            request_file.write_text(json.dumps(task.to_dict()), encoding="utf-8")

            argv = [self.python_executable, "-m", WORKER_MODULE, str(request_file), str(result_file)]
            returncode = self.launcher.launch(argv)
            result = self._read_result(result_file, returncode)

        if returncode != 0:
            message = f"Elevated worker exited with status {returncode}"
            if result and isinstance(result.get("error"), dict):
                message += f": {result['error'].get('message')}"
            raise ElevationFailedError(message, details={"exit_code": returncode, "target": task.target})

        if result is None:
            raise ElevationFailedError(
                "Elevated worker produced no usable result", details={"exit_code": returncode, "target": task.target}
            )

        if result.get("ok"):
            return result.get("value")
        raise error_from_dict(result.get("error") or {})

    @staticmethod
    def _read_result(result_file: Path, returncode: int) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(result_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.error(f"Elevated worker (exit {returncode}) wrote no result")
            return None
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"Elevated worker result is unreadable: {e}")
            return None
        return data if isinstance(data, dict) else None
