"""
Base Plugin - Convenience base class for diagnostic plugins.

While the ``DiagnosticPlugin`` protocol allows any object with the right
interface, this ABC adds the boilerplate most plugins repeat: timing,
abort checks, and building ``Finding`` objects with the plugin id as the
source.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Union

from schemas.findings import EvidencePointer, Finding

from .protocol import DiagnosticContext

logger = logging.getLogger(__name__)


class PluginAborted(Exception):
    """Raised by ``BasePlugin.check_aborted`` once the run was cancelled"""
    pass


class BasePlugin(ABC):
    """Abstract base class that satisfies the ``DiagnosticPlugin`` protocol.

    Subclasses must implement:
    - ``id``, ``title`` (as properties or class attrs)
    - ``_run(ctx)`` -- the probe logic, returning findings

    Optional overrides:
    - ``order`` -- defaults to ``None`` (no preferred position)
    """

    order: Optional[int] = None

    @property
    @abstractmethod
    def id(self) -> str:
        ...

    @property
    @abstractmethod
    def title(self) -> str:
        ...

    @abstractmethod
    def _run(self, ctx: DiagnosticContext) -> Iterable[Union[Finding, Dict[str, Any]]]:
        """Core probe logic.

        Raises
        ------
        Exception
            Propagated to the sandbox, which reports it as an ``error``
            message.
        """
        ...

    def run(self, ctx: DiagnosticContext) -> List[Finding]:
        """Run the probe with timing and validate what it returns."""
        self.check_aborted(ctx)
        start = time.time()
        findings = [
            f if isinstance(f, Finding) else Finding.model_validate(f)
            for f in (self._run(ctx) or [])
        ]
        ctx.logger(
            f"{self.title} finished in {time.time() - start:.2f}s "
            f"with {len(findings)} findings"
        )
        return findings

    def check_aborted(self, ctx: DiagnosticContext) -> None:
        """Call between probes so a cancelled run stops early."""
        if ctx.aborted():
            raise PluginAborted(f"{self.id} aborted")

    def finding(
        self,
        suffix: str,
        severity: str,
        title: str,
        description: str = "",
        area: Optional[str] = None,
        evidence: Optional[List[EvidencePointer]] = None,
        **extra: Any,
    ) -> Finding:
        """Build a finding whose id and source derive from this plugin."""
        return Finding(
            id=f"{self.id}.{suffix}",
            area=area or self.id,
            severity=severity,
            title=title,
            description=description,
            evidence=evidence or [],
            source=self.id,
            **extra,
        )
