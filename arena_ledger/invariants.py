import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .models import VerificationReport

log = logging.getLogger(__name__)


@dataclass
class InvariantCheck:
    name: str
    predicate: Callable[[], bool]
    auto_fix: Optional[Callable[[], None]] = None


class InvariantChecker:
    """Runs ``(predicate, auto_fix)`` pairs and repairs whatever drifted."""

    def __init__(self, checks: Optional[list[InvariantCheck]] = None):
        self.checks: list[InvariantCheck] = list(checks or [])

    def add(self, name: str, predicate: Callable[[], bool], auto_fix: Optional[Callable[[], None]] = None) -> None:
        self.checks.append(InvariantCheck(name=name, predicate=predicate, auto_fix=auto_fix))

    def run(self) -> VerificationReport:
        issues: list[str] = []
        fixed: list[str] = []
        for check in self.checks:
            if check.predicate():
                continue
            issues.append(check.name)
            if check.auto_fix is None:
                log.error("Invariant violated with no automatic fix: %s", check.name)
                continue
            check.auto_fix()
            if check.predicate():
                fixed.append(check.name)
                log.warning("Auto-fixed: %s", check.name)
            else:
                log.error("Auto-fix did not restore invariant: %s", check.name)

        if issues:
            log.warning("Verification found %d issue(s): %s", len(issues), ", ".join(issues))
        else:
            log.debug("Verification passed: all %d checks hold", len(self.checks))
        return VerificationReport(verified=not issues, issues=issues, auto_fixed=fixed)
