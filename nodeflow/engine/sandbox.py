"""
Script Sandbox for the Execution Engine.

Runs one node's script against its ExecutionContext on a worker thread,
captures printed output line by line, enforces a per-node timeout and
turns failures into ScriptError / ScriptTimeoutError.

Scripts come in two shapes:

    # a module defining activate(ctx)
    def activate(ctx):
        print("Hello from", ctx.node.label)
        return {"greeting": "hi"}

    # a bare body; ``ctx`` and ``input`` are in scope and return is allowed
    return {"counter": input["counter"] + 1}

With ``config.sandbox`` enabled (the default) scripts are compiled with
RestrictedPython: safe builtins only, no imports, no underscore names,
guarded attribute and item access. This is a capability restriction,
not a hardened sandbox.
"""

from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from copy import deepcopy
import ast
import asyncio
import builtins
import functools
import json
import logging
import operator
import sys
import textwrap
import threading
import time

from RestrictedPython import compile_restricted, compile_restricted_function, safe_builtins
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)

from nodeflow.config import settings
from nodeflow.engine.context import ExecutionContext
from nodeflow.engine.errors import ScriptError, ScriptTimeoutError
from nodeflow.engine.events import EventType
from nodeflow.engine.node import Node


logger = logging.getLogger(__name__)

ENTRY_POINT = "activate"
BODY_PARAMETERS = "ctx, input"


# ============================================================
# Log line classification
# ============================================================

class LogKind(str, Enum):
    """Semantic class of a captured log line, from its leading marker."""
    TOOL_CALL = "tool-call"
    ARTIFACT = "artifact"
    RESULT = "result"
    SUCCESS = "success"
    QUESTION = "question"
    NOTIFICATION = "notification"
    ERROR = "error"
    PLAIN = "plain"


LOG_MARKERS: Tuple[Tuple[str, LogKind], ...] = (
    ("⚡", LogKind.TOOL_CALL),
    ("📦", LogKind.ARTIFACT),
    ("←", LogKind.RESULT),
    ("✓", LogKind.SUCCESS),
    ("❓", LogKind.QUESTION),
    ("🔔", LogKind.NOTIFICATION),
    ("ERROR", LogKind.ERROR),
)


def classify_log_line(line: str) -> LogKind:
    """Classify a log line by its leading marker."""
    stripped = line.lstrip()
    for marker, kind in LOG_MARKERS:
        if stripped.startswith(marker):
            return kind
    return LogKind.PLAIN


# ============================================================
# Runners
# ============================================================

@dataclass
class SandboxResult:
    """Outcome of a successful script execution."""
    output: Any
    logs: List[str] = field(default_factory=list)
    duration_ms: float = 0.0


class ScriptRunner(Protocol):
    """Executes a script body for one flavour of node (``subType``)."""

    def execute(
        self,
        source: str,
        context: ExecutionContext,
        *,
        restricted: bool,
        filename: str,
        write: Callable[[str], None],
    ) -> Any:
        ...


def _to_text(value: Any) -> str:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str, ensure_ascii=False)
    return str(value)


class _LinePrinter:
    """print() replacement that forwards each printed line to a sink."""

    def __init__(self, write: Callable[[str], None], _getattr_: Any = None):
        self._write = write
        self._printed: List[str] = []

    def _call_print(self, *objects: Any, **kwargs: Any) -> None:
        sep = kwargs.get("sep")
        text = (" " if sep is None else sep).join(_to_text(o) for o in objects)
        self._printed.append(text)
        for line in text.split("\n"):
            self._write(line)

    def __call__(self) -> str:
        # Value of the ``printed`` name inside restricted code.
        return "\n".join(self._printed)


_INPLACE_OPERATORS: Dict[str, Callable[[Any, Any], Any]] = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "^=": operator.ixor,
    "|=": operator.ior,
}


def _inplacevar(op: str, x: Any, y: Any) -> Any:
    if op not in _INPLACE_OPERATORS:
        raise SyntaxError(f"Unsupported in-place operator {op}")
    return _INPLACE_OPERATORS[op](x, y)


def _getitem(obj: Any, key: Any) -> Any:
    return obj[key]


def _getiter(obj: Any) -> Any:
    return iter(obj)


def _apply(func: Callable, *args: Any, **kwargs: Any) -> Any:
    return func(*args, **kwargs)


SCRIPT_BUILTINS: Dict[str, Any] = dict(safe_builtins)
SCRIPT_BUILTINS.update({
    name: getattr(builtins, name)
    for name in (
        "dict", "list", "set", "frozenset", "enumerate", "min", "max", "sum",
        "any", "all", "map", "filter", "reversed",
    )
})


def defines_entry_point(source: str) -> bool:
    """Whether the script is a module with a top-level ``activate`` function."""
    try:
        tree = ast.parse(source)
    except SyntaxError:
        return False
    return any(
        isinstance(stmt, ast.FunctionDef) and stmt.name == ENTRY_POINT
        for stmt in tree.body
    )


class PythonScriptRunner:
    """Runs Python scripts, restricted with RestrictedPython when asked."""

    def execute(
        self,
        source: str,
        context: ExecutionContext,
        *,
        restricted: bool,
        filename: str,
        write: Callable[[str], None],
    ) -> Any:
        printer_factory = functools.partial(_LinePrinter, write)
        if restricted:
            namespace = self._restricted_globals(printer_factory)
            takes_input = self._compile_restricted(source, filename, namespace)
        else:
            namespace = self._trusted_globals(printer_factory(None))
            takes_input = self._compile_trusted(source, filename, namespace)

        activate = namespace.get(ENTRY_POINT)
        if not callable(activate):
            raise ScriptError(context.node.id, f"Script does not define '{ENTRY_POINT}'")
        if takes_input:
            return activate(context, context.input)
        return activate(context)

    def _compile_restricted(self, source: str, filename: str, namespace: Dict[str, Any]) -> bool:
        if defines_entry_point(source):
            code = compile_restricted(source, filename=filename, mode="exec")
            exec(code, namespace)
            return False

        result = compile_restricted_function(
            BODY_PARAMETERS, source, ENTRY_POINT, filename=filename
        )
        if result.errors:
            raise SyntaxError("; ".join(result.errors))
        exec(result.code, namespace)
        return True

    def _compile_trusted(self, source: str, filename: str, namespace: Dict[str, Any]) -> bool:
        if defines_entry_point(source):
            exec(compile(source, filename, "exec"), namespace)
            return False

        wrapped = f"def {ENTRY_POINT}({BODY_PARAMETERS}):\n" + textwrap.indent(source, "    ")
        exec(compile(wrapped, filename, "exec"), namespace)
        return True

    @staticmethod
    def _restricted_globals(printer_factory: Callable[..., _LinePrinter]) -> Dict[str, Any]:
        return {
            "__builtins__": SCRIPT_BUILTINS,
            "__name__": "nodeflow_script",
            "__metaclass__": type,
            "_print_": printer_factory,
            "_getattr_": safer_getattr,
            "_getitem_": _getitem,
            "_getiter_": _getiter,
            "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
            "_unpack_sequence_": guarded_unpack_sequence,
            "_write_": full_write_guard,
            "_inplacevar_": _inplacevar,
            "_apply_": _apply,
        }

    @staticmethod
    def _trusted_globals(printer: _LinePrinter) -> Dict[str, Any]:
        def script_print(*objects: Any, sep: str = " ", end: str = "\n", **kwargs: Any) -> None:
            printer._call_print(*objects, sep=sep)

        script_builtins = dict(vars(builtins))
        script_builtins["print"] = script_print
        return {"__builtins__": script_builtins, "__name__": "nodeflow_script"}


# ============================================================
# Sandbox
# ============================================================

class _Abort(BaseException):
    """Raised inside a script frame once its execution has been abandoned."""


def _run_abortable(func: Callable[[], Any], filename: str, abort: threading.Event) -> Any:
    """
    Run ``func`` on the current thread with a trace hook on script frames.

    Once ``abort`` is set, the next traced line of script code raises
    _Abort. Code running outside script frames (builtins, C loops) cannot
    be interrupted.
    """

    def local_trace(frame, event, arg):
        if abort.is_set():
            raise _Abort()
        return local_trace

    def global_trace(frame, event, arg):
        if frame.f_code.co_filename != filename:
            return None
        if abort.is_set():
            raise _Abort()
        return local_trace

    previous = sys.gettrace()
    sys.settrace(global_trace)
    try:
        return func()
    finally:
        sys.settrace(previous)


class ScriptSandbox:
    """
    Executes node scripts with a narrow capability surface.

    A script can read its context, return a value (the node's output),
    call ``ctx.emit``/``ctx.report``/``ctx.log`` and print. Printed lines
    are captured, forwarded to ``on_log`` and surfaced on the event bus
    through ``ctx.emit``.

    Usage:
        sandbox = ScriptSandbox()
        result = await sandbox.run(node, context, timeout_ms=2000)
        result.output, result.logs
    """

    def __init__(
        self,
        runners: Optional[Dict[str, ScriptRunner]] = None,
        max_workers: Optional[int] = None,
    ):
        python = PythonScriptRunner()
        self._runners: Dict[str, ScriptRunner] = {"": python, "py": python, "python": python}
        if runners:
            self._runners.update(runners)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.SANDBOX_WORKERS,
            thread_name_prefix="nodeflow-script",
        )

    def register_runner(self, sub_type: str, runner: ScriptRunner) -> None:
        """Register a runner for a node ``subType``."""
        self._runners[sub_type.lower()] = runner

    def runner_for(self, node: Node) -> ScriptRunner:
        key = (node.sub_type or "").lower()
        runner = self._runners.get(key)
        if runner is None:
            raise ScriptError(node.id, f"No script runner for subType '{node.sub_type}'")
        return runner

    async def run(
        self,
        node: Node,
        context: ExecutionContext,
        timeout_ms: Optional[float] = None,
        on_log: Optional[Callable[[str], None]] = None,
    ) -> SandboxResult:
        """
        Execute the node's script.

        Args:
            node: The node whose ``config.script`` is executed
            context: The context handed to the script
            timeout_ms: Execution budget; None means unbounded
            on_log: Called with every captured line

        Returns:
            SandboxResult with the output payload and captured lines

        Raises:
            ScriptError: If the script fails to compile or raises
            ScriptTimeoutError: If the budget is exceeded
        """
        if not node.has_script:
            # Nothing to run: the node forwards its input.
            return SandboxResult(output=deepcopy(context.input))

        runner = self.runner_for(node)
        logs: List[str] = []
        abort = threading.Event()

        def write(line: str) -> None:
            if abort.is_set():
                return
            logs.append(line)
            if on_log is not None:
                on_log(line)
            if classify_log_line(line) == LogKind.ERROR:
                context.emit(EventType.ERROR.value, line)
            else:
                context.emit(EventType.LOG.value, line)

        script_context = context.with_log(
            lambda *parts: write(" ".join(_to_text(p) for p in parts))
        )
        filename = f"<node:{node.id}>"
        job = functools.partial(
            self._execute, runner, node, script_context, filename, write, abort
        )

        loop = asyncio.get_running_loop()
        started = time.perf_counter()
        future = loop.run_in_executor(self._executor, job)
        try:
            output = await asyncio.wait_for(
                future, timeout=timeout_ms / 1000 if timeout_ms else None
            )
        except asyncio.TimeoutError:
            abort.set()
            logger.warning(f"Node {node.id} timed out after {timeout_ms} ms")
            raise ScriptTimeoutError(node.id, timeout_ms) from None
        except asyncio.CancelledError:
            abort.set()
            raise

        if output is None:
            output = deepcopy(context.input)

        return SandboxResult(
            output=output,
            logs=logs,
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    def _execute(
        self,
        runner: ScriptRunner,
        node: Node,
        context: ExecutionContext,
        filename: str,
        write: Callable[[str], None],
        abort: threading.Event,
    ) -> Any:
        """Worker-thread entry point."""
        try:
            return _run_abortable(
                lambda: runner.execute(
                    node.config.script,
                    context,
                    restricted=node.config.sandbox,
                    filename=filename,
                    write=write,
                ),
                filename,
                abort,
            )
        except _Abort:
            raise ScriptError(node.id, "Execution aborted") from None
        except ScriptError:
            raise
        except SyntaxError as e:
            raise ScriptError(node.id, f"Syntax error: {e}") from e
        except Exception as e:
            raise ScriptError(node.id, f"{type(e).__name__}: {e}") from e

    def shutdown(self) -> None:
        """Stop the worker threads (waits for none)."""
        self._executor.shutdown(wait=False)
