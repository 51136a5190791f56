"""Validated cache of the language runtimes this agent can run instances under.

Each configured runtime is checked once: its executable is resolved, its
version is probed and any additional checks are run. The result is cached and
only re-validated when one of the fields that drive validation changes, so
repeated initialisation with identical configuration spawns no processes.
"""

import asyncio
import dataclasses
import os
import shlex
import shutil
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from instances.security import sanitize_output

logger = structlog.get_logger(__name__)

# Fields whose change forces a fresh validation.
VALIDATION_FIELDS: tuple[str, ...] = (
    "executable",
    "version_flag",
    "version_output",
    "additional_checks",
)

_SPEC_FIELDS: frozenset[str] = frozenset(
    {"name", "environment", *VALIDATION_FIELDS}
)

# Keys produced by validation; never accepted from configuration.
_DERIVED_FIELDS: frozenset[str] = frozenset({"expanded_executable", "enabled"})


@dataclass
class RuntimeSpec:
    """A runtime definition as supplied by configuration.

    Attributes:
        name: Runtime name, e.g. ``ruby18``.
        executable: Bare command looked up on PATH, or a path.
        version_flag: Arguments that make the executable print its version.
        version_output: Text expected somewhere in the version output.
        additional_checks: Shell command that must exit 0.
        environment: Extra environment exported to instances of this runtime.
        extra: Any other configured keys, carried along untouched.
    """

    name: str
    executable: str = ""
    version_flag: str | None = None
    version_output: str | None = None
    additional_checks: str | None = None
    environment: dict[str, str] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RuntimeSpec":
        """Build a spec from a configuration mapping.

        Keys that are not named fields are kept in ``extra``.

        Raises:
            ValueError: If the mapping has no name.
        """
        name = data.get("name")
        if not name:
            raise ValueError("Runtime definition is missing 'name'")

        environment = data.get("environment") or {}
        return cls(
            name=str(name),
            executable=str(data.get("executable") or ""),
            version_flag=data.get("version_flag"),
            version_output=data.get("version_output"),
            additional_checks=data.get("additional_checks"),
            environment={str(k): str(v) for k, v in environment.items()},
            extra={
                k: v
                for k, v in data.items()
                if k not in _SPEC_FIELDS and k not in _DERIVED_FIELDS
            },
        )


@dataclass
class RuntimeEntry(RuntimeSpec):
    """A runtime definition together with the outcome of its validation."""

    expanded_executable: str | None = None
    enabled: bool = False

    @classmethod
    def from_spec(
        cls,
        spec: RuntimeSpec,
        *,
        expanded_executable: str | None = None,
        enabled: bool = False,
    ) -> "RuntimeEntry":
        return cls(
            name=spec.name,
            executable=spec.executable,
            version_flag=spec.version_flag,
            version_output=spec.version_output,
            additional_checks=spec.additional_checks,
            environment=dict(spec.environment),
            extra=dict(spec.extra),
            expanded_executable=expanded_executable,
            enabled=enabled,
        )

    def to_dict(self) -> dict[str, Any]:
        """Flat mapping view with unset optional fields omitted."""
        data: dict[str, Any] = {"name": self.name, "executable": self.executable}
        for key in VALIDATION_FIELDS[1:]:
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.environment:
            data["environment"] = dict(self.environment)
        data.update(self.extra)
        if self.expanded_executable is not None:
            data["expanded_executable"] = self.expanded_executable
        data["enabled"] = self.enabled
        return data


def requires_validation(entry: RuntimeEntry | None, spec: RuntimeSpec) -> bool:
    """Return True if ``spec`` differs from ``entry`` in a validation field."""
    if entry is None:
        return True
    return any(
        getattr(entry, name) != getattr(spec, name) for name in VALIDATION_FIELDS
    )


def merge_runtime_entry(entry: RuntimeEntry, spec: RuntimeSpec) -> RuntimeEntry:
    """Take the non-validation fields of ``spec`` over an already validated entry.

    Keys missing from ``spec`` are dropped from the result. Validation fields,
    ``expanded_executable`` and ``enabled`` come from ``entry``.
    """
    return dataclasses.replace(
        entry,
        environment=dict(spec.environment),
        extra=dict(spec.extra),
    )


def _probe_env() -> dict[str, str]:
    """Minimal environment for version and health probes."""
    return {
        "HOME": os.environ.get("HOME", "/"),
        "PATH": os.environ.get("PATH", os.defpath),
    }


class RuntimeRegistry:
    """Holds validated runtime entries keyed by runtime name.

    Attributes:
        runtime_names: Names this agent is configured to support.
        probe_timeout: Seconds allowed for each version/additional check.
    """

    def __init__(
        self,
        runtime_names: Iterable[str] = (),
        probe_timeout: float = 10.0,
    ) -> None:
        self.runtime_names: set[str] = set(runtime_names)
        self.probe_timeout = probe_timeout
        self._runtimes: dict[str, RuntimeEntry] = {}

    async def initialize_runtimes(
        self, specs: Iterable[RuntimeSpec | Mapping[str, Any]]
    ) -> None:
        """Initialise every runtime in ``specs``."""
        for spec in specs:
            await self.initialize_runtime(spec)

    async def initialize_runtime(
        self, spec: RuntimeSpec | Mapping[str, Any]
    ) -> RuntimeEntry | None:
        """Validate ``spec`` if needed and cache the result.

        Args:
            spec: The runtime definition.

        Returns:
            The cached entry, or None if the runtime is not configured.
        """
        if not isinstance(spec, RuntimeSpec):
            spec = RuntimeSpec.from_dict(spec)

        if spec.name not in self.runtime_names:
            logger.debug("runtime_not_configured", runtime=spec.name)
            return None

        current = self._runtimes.get(spec.name)
        if current is not None and not requires_validation(current, spec):
            entry = merge_runtime_entry(current, spec)
            self._runtimes[spec.name] = entry
            return entry

        entry = await self._validate(spec)
        self._runtimes[spec.name] = entry
        logger.info(
            "runtime_initialized",
            runtime=spec.name,
            enabled=entry.enabled,
            expanded_executable=entry.expanded_executable,
        )
        return entry

    async def _validate(self, spec: RuntimeSpec) -> RuntimeEntry:
        """Run the full validation sequence for ``spec``."""
        expanded = shutil.which(spec.executable) if spec.executable else None
        if expanded is None:
            logger.warning(
                "runtime_executable_not_found",
                runtime=spec.name,
                executable=spec.executable,
            )
            return RuntimeEntry.from_spec(spec, enabled=False)

        expanded = os.path.abspath(expanded)
        disabled = RuntimeEntry.from_spec(
            spec, expanded_executable=expanded, enabled=False
        )

        if spec.version_flag:
            if spec.version_output is None:
                # Nothing to compare the probed version against.
                logger.warning(
                    "runtime_version_output_missing",
                    runtime=spec.name,
                    version_flag=spec.version_flag,
                )
                return disabled

            try:
                args = shlex.split(spec.version_flag)
            except ValueError as e:
                logger.warning(
                    "runtime_version_flag_invalid",
                    runtime=spec.name,
                    version_flag=spec.version_flag,
                    error=str(e),
                )
                return disabled

            exit_code, output = await self._run_probe(expanded, *args)
            if exit_code != 0:
                logger.warning(
                    "runtime_version_check_failed",
                    runtime=spec.name,
                    exit_code=exit_code,
                    output=sanitize_output(output),
                )
                return disabled
        else:
            output = ""

        if spec.version_output is not None and spec.version_output not in output:
            logger.warning(
                "runtime_version_mismatch",
                runtime=spec.name,
                expected=spec.version_output,
                output=sanitize_output(output),
            )
            return disabled

        if spec.additional_checks:
            exit_code, check_output = await self._run_probe(
                "/bin/sh", "-c", spec.additional_checks
            )
            if exit_code != 0:
                logger.warning(
                    "runtime_additional_checks_failed",
                    runtime=spec.name,
                    exit_code=exit_code,
                    output=sanitize_output(check_output),
                )
                return disabled

        return RuntimeEntry.from_spec(spec, expanded_executable=expanded, enabled=True)

    async def _run_probe(self, *argv: str) -> tuple[int | None, str]:
        """Run a probe command with the configured timeout.

        Returns:
            (exit_code, combined stdout and stderr). exit_code is None when the
            process could not be started or timed out.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=_probe_env(),
            )
        except OSError as e:
            logger.warning("runtime_probe_spawn_failed", argv=argv[:2], error=str(e))
            return None, str(e)

        try:
            stdout, _ = await asyncio.wait_for(
                proc.communicate(), timeout=self.probe_timeout
            )
        except TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(
                "runtime_probe_timeout", argv=argv[:2], timeout=self.probe_timeout
            )
            return None, ""

        return proc.returncode, stdout.decode("utf-8", errors="replace")

    def runtime_supported(
        self, runtime: str | RuntimeSpec | Mapping[str, Any] | None
    ) -> bool:
        """Return True if the runtime is configured and passed validation."""
        name = runtime_name(runtime)
        if name is None or name not in self.runtime_names:
            return False
        entry = self._runtimes.get(name)
        return entry is not None and entry.enabled

    def runtime_env(self, name: str) -> list[str]:
        """Return the runtime's environment as ``KEY=VALUE`` strings."""
        entry = self._runtimes.get(name)
        if entry is None:
            return []
        return [f"{key}={value}" for key, value in entry.environment.items()]

    def get(self, name: str) -> RuntimeEntry | None:
        return self._runtimes.get(name)

    def entries(self) -> list[RuntimeEntry]:
        return list(self._runtimes.values())

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: entry.to_dict() for name, entry in self._runtimes.items()}


def runtime_name(runtime: str | RuntimeSpec | Mapping[str, Any] | None) -> str | None:
    """Extract a runtime name from the shapes callers pass around."""
    if runtime is None:
        return None
    if isinstance(runtime, str):
        return runtime
    if isinstance(runtime, RuntimeSpec):
        return runtime.name
    name = runtime.get("name")
    return str(name) if name else None
