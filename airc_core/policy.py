"""
airc_core.policy
----------------
Enforcement policy for signed chat messages.

The rollout has two phases separated by a fixed cutover instant:

  permissive  unsigned messages accepted with a deprecation warning
  strict      unsigned messages rejected (signature_required)

The phase is always computed from an explicit PolicyConfig and a supplied
`now`, never from module-level state, so callers (and tests) can evaluate
either phase deterministically.
"""

from __future__ import annotations
import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Mapping, Optional

from .constants import DEFAULT_GRACE_PERIOD_END
from .utils import iso, parse_timestamp


class EnforcementPhase(str, Enum):
    PERMISSIVE = "permissive"
    STRICT = "strict"


@dataclass(frozen=True)
class PolicyConfig:
    cutover: datetime
    # True forces strict, False forces permissive, None follows the cutover
    strict_override: Optional[bool] = None

    def in_grace_period(self, now: datetime) -> bool:
        return now < self.cutover

    def phase_at(self, now: datetime) -> EnforcementPhase:
        if self.strict_override is True:
            return EnforcementPhase.STRICT
        if self.strict_override is False:
            return EnforcementPhase.PERMISSIVE
        return EnforcementPhase.PERMISSIVE if self.in_grace_period(now) else EnforcementPhase.STRICT

    def headers(self, now: datetime) -> Dict[str, str]:
        strict = self.phase_at(now) is EnforcementPhase.STRICT
        return {
            "X-AIRC-Strict-Mode": "enforced" if strict else "optional",
            "X-AIRC-Grace-Period-Ends": iso(self.cutover),
        }

    def deprecation_warning(self) -> str:
        return f"Message is unsigned. Signing will be required after {iso(self.cutover)}."

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "PolicyConfig":
        """
        AIRC_GRACE_PERIOD_END  ISO instant of the cutover (default 2026-02-01T00:00:00Z)
        AIRC_STRICT_MODE       "true" forces strict, "false" forces permissive, unset follows the cutover
        """
        env = os.environ if env is None else env
        raw_cutover = env.get("AIRC_GRACE_PERIOD_END", DEFAULT_GRACE_PERIOD_END)
        cutover = parse_timestamp(raw_cutover)
        if cutover is None:
            raise ValueError(f"Invalid AIRC_GRACE_PERIOD_END: {raw_cutover!r}")

        raw_strict = (env.get("AIRC_STRICT_MODE") or "").strip().lower()
        override = {"true": True, "1": True, "false": False, "0": False}.get(raw_strict)
        return cls(cutover=cutover, strict_override=override)
