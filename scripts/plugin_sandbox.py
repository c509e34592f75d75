#!/usr/bin/env python3
"""
Plugin Sandbox for the diagnostics engine

Runs one plugin invocation in an isolated worker under a wall-clock and
memory budget, and talks to it only through a small message protocol:

    {"type": "log",      "args": [...]}
    {"type": "evidence", "pointer": {...}}
    {"type": "result",   "findings": [...]}     # terminal
    {"type": "error",    "message": "...", "severity": "..."}  # terminal

Terminal messages from process workers also carry ``breakers``: snapshots
of the circuit breakers the plugin touched, merged into the host registry.

The first terminal message wins.  ``log`` and ``evidence`` messages are
forwarded to observability and never affect control flow.

Isolation modes:

  - **process** : a ``multiprocessing`` worker (fork where available),
                  hard-terminated when a budget is breached
  - **thread**  : an in-process daemon thread, cancelled cooperatively
                  through ``DiagnosticContext.cancel_event``

Budget breaches, crashes and cancellations surface as
``SandboxTimeoutError`` / ``SandboxExecutionError`` carrying one synthetic
``minor`` finding.  The sandbox never retries.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import multiprocessing
import os
import queue
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from exceptions import SandboxExecutionError, SandboxTimeoutError
from finding_normalizer import severity_rank
from schemas.findings import EvidencePointer, Finding
from workflow.protocol import DiagnosticContext, DiagnosticPlugin, SandboxBudgets

logger = logging.getLogger(__name__)

__all__ = [
    "SandboxBudgets",
    "PluginRegistry",
    "PluginSandbox",
    "ISOLATION_MODES",
]

ISOLATION_MODES = ("process", "thread")

MSG_LOG = "log"
MSG_EVIDENCE = "evidence"
MSG_RESULT = "result"
MSG_ERROR = "error"

# Grace period for a worker to exit on its own after a terminal message.
_EXIT_GRACE_SECONDS = 1.0


# ---------------------------------------------------------------------------
# Plugin registry
# ---------------------------------------------------------------------------


class PluginRegistry:
    """Maps plugin ids to plugin objects.

    Created per executor; there is no module-level registry.
    """

    def __init__(self, plugins: Optional[List[DiagnosticPlugin]] = None) -> None:
        self._plugins: Dict[str, DiagnosticPlugin] = {}
        for plugin in plugins or []:
            self.register(plugin)

    def register(self, plugin: DiagnosticPlugin, replace: bool = False) -> None:
        if not isinstance(plugin, DiagnosticPlugin):
            raise TypeError(
                f"{type(plugin).__name__} does not implement DiagnosticPlugin"
            )
        if plugin.id in self._plugins and not replace:
            logger.debug("Plugin %s already registered; keeping existing", plugin.id)
            return
        self._plugins[plugin.id] = plugin

    def get(self, plugin_id: str) -> Optional[DiagnosticPlugin]:
        return self._plugins.get(plugin_id)

    def __contains__(self, plugin_id: object) -> bool:
        return plugin_id in self._plugins

    def ids(self) -> List[str]:
        return sorted(self._plugins)

    def list_plugins(self) -> List[Dict[str, Any]]:
        """Plugin summaries ordered by declared ``order`` then id."""
        infos = [
            {
                "id": p.id,
                "title": p.title,
                "order": getattr(p, "order", None),
            }
            for p in self._plugins.values()
        ]
        return sorted(
            infos,
            key=lambda i: (i["order"] if i["order"] is not None else 1 << 30, i["id"]),
        )


# ---------------------------------------------------------------------------
# Worker side
# ---------------------------------------------------------------------------


def _dump(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value


def _run_plugin(plugin: DiagnosticPlugin, ctx: DiagnosticContext) -> List[Any]:
    result = plugin.run(ctx)
    if inspect.isawaitable(result):

        async def _await() -> Any:
            return await result

        result = asyncio.run(_await())
    if result is None:
        return []
    return [_dump(f) for f in result]


def _worker_main(
    plugin: DiagnosticPlugin,
    ctx: DiagnosticContext,
    post: Callable[[Dict[str, Any]], None],
) -> None:
    """Entry point of an isolated worker.  Posts exactly one terminal message."""

    def _log(*args: Any) -> None:
        post({"type": MSG_LOG, "args": [str(a) for a in args]})

    def _evidence(pointer: Any) -> None:
        post({"type": MSG_EVIDENCE, "pointer": _dump(pointer)})

    ctx = dataclasses.replace(ctx, logger=_log, evidence=_evidence)
    try:
        findings = _run_plugin(plugin, ctx)
        post({"type": MSG_RESULT, "findings": findings})
    except BaseException as exc:  # worker boundary: every failure becomes a message
        post(
            {
                "type": MSG_ERROR,
                "message": f"{type(exc).__name__}: {exc}",
                "severity": getattr(exc, "severity", None),
            }
        )


def _touched_breakers(
    before: Dict[str, Dict[str, Any]], after: Dict[str, Dict[str, Any]]
) -> Dict[str, Dict[str, Any]]:
    return {
        name: snap
        for name, snap in after.items()
        if name not in before
        or snap["totals"].get("requests") != before[name]["totals"].get("requests")
    }


def _process_entry(plugin: DiagnosticPlugin, ctx: DiagnosticContext, channel: Any) -> None:
    breakers = ctx.breakers if hasattr(ctx.breakers, "export_state") else None
    before = breakers.export_state() if breakers is not None else {}

    def post(message: Dict[str, Any]) -> None:
        if breakers is not None and message["type"] in (MSG_RESULT, MSG_ERROR):
            message["breakers"] = _touched_breakers(before, breakers.export_state())
        channel.put(message)

    _worker_main(plugin, ctx, post)


class _ProcessWorker:
    def __init__(self, mp_context: Any, plugin: DiagnosticPlugin, ctx: DiagnosticContext):
        self.channel = mp_context.Queue()
        child_ctx = dataclasses.replace(
            ctx, cancel_event=None, logger=None, evidence=None
        )
        self._process = mp_context.Process(
            target=_process_entry,
            args=(plugin, child_ctx, self.channel),
            name=f"sandbox-{plugin.id}",
            daemon=True,
        )

    def start(self) -> None:
        self._process.start()

    def is_alive(self) -> bool:
        return self._process.is_alive()

    @property
    def exitcode(self) -> Optional[int]:
        return self._process.exitcode

    def rss_mb(self) -> Optional[float]:
        return _read_rss_mb(self._process.pid)

    def terminate(self) -> None:
        if self._process.is_alive():
            self._process.terminate()
            self._process.join(_EXIT_GRACE_SECONDS)
            if self._process.is_alive():
                self._process.kill()
                self._process.join(_EXIT_GRACE_SECONDS)

    def finish(self) -> None:
        self._process.join(_EXIT_GRACE_SECONDS)
        self.terminate()
        self.channel.close()
        self.channel.cancel_join_thread()


class _ThreadWorker:
    def __init__(self, plugin: DiagnosticPlugin, ctx: DiagnosticContext):
        self.channel: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        self._abort = threading.Event()
        child_ctx = dataclasses.replace(ctx, cancel_event=self._abort)
        self._thread = threading.Thread(
            target=_worker_main,
            args=(plugin, child_ctx, self.channel.put),
            name=f"sandbox-{plugin.id}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    @property
    def exitcode(self) -> Optional[int]:
        return None if self._thread.is_alive() else 0

    def rss_mb(self) -> Optional[float]:
        return None

    def terminate(self) -> None:
        # Threads cannot be killed; signal the plugin and abandon it.
        self._abort.set()

    def finish(self) -> None:
        self._abort.set()


def _read_rss_mb(pid: Optional[int]) -> Optional[float]:
    """Resident set size of *pid* in MiB, or ``None`` where /proc is absent."""
    if pid is None:
        return None
    try:
        with open(f"/proc/{pid}/statm", "r", encoding="ascii") as fh:
            resident_pages = int(fh.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE") / (1024 * 1024)
    except (OSError, ValueError, IndexError):
        return None


# ---------------------------------------------------------------------------
# Host side
# ---------------------------------------------------------------------------


class PluginSandbox:
    """Execute plugins in isolated workers with enforced budgets.

    Parameters
    ----------
    registry : PluginRegistry
        Where plugin ids are resolved.
    isolation : str
        ``"process"`` (default) or ``"thread"``.
    poll_interval_ms : int
        How often the supervisor checks deadlines, memory and cancellation.
    on_evidence : callable | None
        ``on_evidence(plugin_id, pointer_dict)`` for forwarded evidence.
    start_method : str | None
        ``multiprocessing`` start method; defaults to ``fork`` where the
        platform offers it so plugins defined anywhere can be dispatched.
    """

    def __init__(
        self,
        registry: Optional[PluginRegistry] = None,
        isolation: str = "process",
        poll_interval_ms: int = 50,
        on_evidence: Optional[Callable[[str, Any], None]] = None,
        start_method: Optional[str] = None,
    ) -> None:
        if isolation not in ISOLATION_MODES:
            raise ValueError(
                f"Invalid isolation {isolation!r}. Must be one of {ISOLATION_MODES}."
            )
        self.registry = registry or PluginRegistry()
        self.isolation = isolation
        self.poll_interval = max(1, poll_interval_ms) / 1000.0
        self.on_evidence = on_evidence
        if start_method is None and "fork" in multiprocessing.get_all_start_methods():
            start_method = "fork"
        self._mp_context = multiprocessing.get_context(start_method)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(
        self,
        plugin_id: str,
        context: DiagnosticContext,
        budgets: SandboxBudgets,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Finding]:
        """Run *plugin_id* against *context* and return its raw findings.

        Raises
        ------
        SandboxTimeoutError
            The time budget elapsed or *cancel_event* fired.
        SandboxExecutionError
            The plugin raised, its worker crashed, it exceeded ``mem_mb``,
            or it returned something that is not a list of findings.
        """
        plugin = self.registry.get(plugin_id)
        if plugin is None:
            raise self._execution_error(plugin_id, f"Unknown plugin: {plugin_id}")

        cancel_event = cancel_event or context.cancel_event
        if cancel_event is not None and cancel_event.is_set():
            raise self._timeout_error(plugin_id, budgets, cancelled=True)

        worker = self._spawn(plugin, context)
        started = time.monotonic()
        deadline = started + budgets.time_ms / 1000.0
        logger.debug(
            "Sandbox starting %s (%s, %dms, %dMB)",
            plugin_id, self.isolation, budgets.time_ms, budgets.mem_mb,
        )

        try:
            worker.start()
            message = self._await_terminal(
                plugin_id, worker, deadline, budgets, cancel_event
            )
        finally:
            worker.finish()

        if message.get("breakers") and context.breakers is not None:
            context.breakers.merge_state(message["breakers"])
            logger.debug(
                "Merged breakers %s from plugin %s",
                sorted(message["breakers"]), plugin_id,
            )

        elapsed_ms = (time.monotonic() - started) * 1000
        if message["type"] == MSG_ERROR:
            logger.warning("Plugin %s failed: %s", plugin_id, message.get("message"))
            raise self._execution_error(
                plugin_id,
                str(message.get("message") or "plugin error"),
                reported_severity=message.get("severity"),
            )

        try:
            findings = [
                f if isinstance(f, Finding) else Finding.model_validate(f)
                for f in message.get("findings") or []
            ]
        except (ValueError, TypeError) as exc:
            raise self._execution_error(
                plugin_id, f"invalid plugin result: {exc}"
            ) from exc

        logger.debug(
            "Sandbox finished %s in %.0fms with %d findings",
            plugin_id, elapsed_ms, len(findings),
        )
        return findings

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def _spawn(self, plugin: DiagnosticPlugin, context: DiagnosticContext) -> Any:
        if self.isolation == "thread":
            return _ThreadWorker(plugin, context)
        return _ProcessWorker(self._mp_context, plugin, context)

    def _await_terminal(
        self,
        plugin_id: str,
        worker: Any,
        deadline: float,
        budgets: SandboxBudgets,
        cancel_event: Optional[threading.Event],
    ) -> Dict[str, Any]:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                worker.terminate()
                raise self._timeout_error(plugin_id, budgets, cancelled=True)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                worker.terminate()
                logger.warning(
                    "Plugin %s exceeded %dms budget; terminated",
                    plugin_id, budgets.time_ms,
                )
                raise self._timeout_error(plugin_id, budgets)

            try:
                message = worker.channel.get(timeout=min(self.poll_interval, remaining))
            except queue.Empty:
                if not worker.is_alive():
                    try:
                        message = worker.channel.get(timeout=self.poll_interval)
                    except queue.Empty:
                        raise self._execution_error(
                            plugin_id,
                            f"sandbox exited with code {worker.exitcode} "
                            "before reporting a result",
                        )
                else:
                    rss = worker.rss_mb()
                    if rss is not None and rss > budgets.mem_mb:
                        worker.terminate()
                        raise self._execution_error(
                            plugin_id,
                            f"memory budget exceeded ({rss:.0f}MB > {budgets.mem_mb}MB)",
                        )
                    continue

            if not isinstance(message, dict):
                continue
            kind = message.get("type")
            if kind == MSG_LOG:
                logger.info(
                    "[plugin:%s] %s", plugin_id, " ".join(message.get("args") or [])
                )
            elif kind == MSG_EVIDENCE:
                self._forward_evidence(plugin_id, message.get("pointer"))
            elif kind in (MSG_RESULT, MSG_ERROR):
                return message

    def _forward_evidence(self, plugin_id: str, pointer: Any) -> None:
        logger.debug("[evidence:%s] %s", plugin_id, pointer)
        if self.on_evidence is None:
            return
        try:
            self.on_evidence(plugin_id, pointer)
        except Exception as exc:
            logger.warning("Evidence callback failed for %s: %s", plugin_id, exc)

    # ------------------------------------------------------------------
    # Synthetic findings
    # ------------------------------------------------------------------

    @staticmethod
    def _timeout_error(
        plugin_id: str, budgets: SandboxBudgets, cancelled: bool = False
    ) -> SandboxTimeoutError:
        reason = "cancelled" if cancelled else f"exceeded {budgets.time_ms}ms budget"
        finding = Finding(
            id=f"sandbox.{plugin_id}.timeout",
            area="framework",
            severity="minor",
            title="plugin timed out",
            description=f"Plugin {plugin_id} {reason}",
            evidence=[EvidencePointer(type="log", ref=f"sandbox:{plugin_id}")],
            tags=["sandbox", "timeout"],
            source=plugin_id,
        )
        return SandboxTimeoutError(
            f"sandbox timeout for plugin {plugin_id}: {reason}",
            plugin_id=plugin_id,
            findings=[finding],
        )

    @staticmethod
    def _execution_error(
        plugin_id: str, message: str, reported_severity: Optional[str] = None
    ) -> SandboxExecutionError:
        severity = "minor"
        if (
            reported_severity in ("major", "blocker")
            and severity_rank(reported_severity) > severity_rank(severity)
        ):
            severity = reported_severity
        finding = Finding(
            id=f"sandbox.{plugin_id}.error",
            area="framework",
            severity=severity,
            title="plugin failed",
            description=f"Plugin {plugin_id} failed: {message}",
            evidence=[EvidencePointer(type="log", ref=f"sandbox:{plugin_id}")],
            tags=["sandbox", "error"],
            source=plugin_id,
        )
        return SandboxExecutionError(
            f"plugin {plugin_id} failed: {message}",
            plugin_id=plugin_id,
            findings=[finding],
        )
