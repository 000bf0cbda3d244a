"""Engine configuration.

EngineConfig is an immutable value. Builder methods return modified
copies, so one base configuration can be shared and specialised per run:

    config = EngineConfig.from_env().with_max_parallelism(8)
    handle = await coordinator.submit(definition, params, config=config.with_fail_fast(False))
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import Enum

from pytaxis.errors import ConfigError

ENV_PREFIX = "PYTAXIS_"


class SkipPolicy(Enum):
    """How a Skipped task affects its dependents.

    FAIL_ON_REFERENCE:
        Dependents proceed normally. A dependent that references an output
        of the skipped task fails with UnresolvedReferenceError.
    PROPAGATE:
        A dependent whose dependencies were all skipped is skipped as well,
        without evaluating its own `when` gate.
    """

    FAIL_ON_REFERENCE = "fail_on_reference"
    PROPAGATE = "propagate"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class EngineConfig:
    """
    Scheduler and coordinator settings.

    Attributes:
        max_parallelism: Maximum task instances in flight per run
        fail_fast: Cancel pending work after the first mandatory failure
        skip_policy: Effect of a skipped task on its dependents
        default_timeout: Per-attempt timeout for tasks that declare none
        event_queue_size: Capacity of the notification queue
    """

    max_parallelism: int = 4
    fail_fast: bool = True
    skip_policy: SkipPolicy = SkipPolicy.FAIL_ON_REFERENCE
    default_timeout: float | None = None
    event_queue_size: int = 1000

    def __post_init__(self) -> None:
        if self.max_parallelism < 1:
            raise ConfigError(f"max_parallelism must be >= 1, got {self.max_parallelism}")
        if self.default_timeout is not None and self.default_timeout <= 0:
            raise ConfigError(f"default_timeout must be positive, got {self.default_timeout}")
        if self.event_queue_size < 1:
            raise ConfigError(f"event_queue_size must be >= 1, got {self.event_queue_size}")

    def with_max_parallelism(self, max_parallelism: int) -> EngineConfig:
        return replace(self, max_parallelism=max_parallelism)

    def with_fail_fast(self, fail_fast: bool) -> EngineConfig:
        return replace(self, fail_fast=fail_fast)

    def with_skip_policy(self, skip_policy: SkipPolicy) -> EngineConfig:
        return replace(self, skip_policy=skip_policy)

    def with_default_timeout(self, timeout: float | None) -> EngineConfig:
        return replace(self, default_timeout=timeout)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineConfig:
        """
        Build a configuration from environment variables.

        Reads PYTAXIS_MAX_PARALLELISM, PYTAXIS_FAIL_FAST,
        PYTAXIS_SKIP_POLICY and PYTAXIS_DEFAULT_TIMEOUT. Unset variables
        keep their defaults.

        Raises:
            ConfigError: If a variable is set to a malformed value
        """
        env = os.environ if environ is None else environ
        config = cls()

        raw = env.get(f"{ENV_PREFIX}MAX_PARALLELISM")
        if raw:
            try:
                config = config.with_max_parallelism(int(raw))
            except ValueError:
                raise ConfigError(f"{ENV_PREFIX}MAX_PARALLELISM must be an integer: {raw!r}") from None

        raw = env.get(f"{ENV_PREFIX}FAIL_FAST")
        if raw:
            config = config.with_fail_fast(_parse_bool(f"{ENV_PREFIX}FAIL_FAST", raw))

        raw = env.get(f"{ENV_PREFIX}SKIP_POLICY")
        if raw:
            try:
                config = config.with_skip_policy(SkipPolicy(raw.strip().lower()))
            except ValueError:
                choices = ", ".join(p.value for p in SkipPolicy)
                raise ConfigError(
                    f"{ENV_PREFIX}SKIP_POLICY must be one of {choices}: {raw!r}"
                ) from None

        raw = env.get(f"{ENV_PREFIX}DEFAULT_TIMEOUT")
        if raw:
            try:
                config = config.with_default_timeout(float(raw))
            except ValueError:
                raise ConfigError(f"{ENV_PREFIX}DEFAULT_TIMEOUT must be a number: {raw!r}") from None

        return config


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean: {raw!r}")
