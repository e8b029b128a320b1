"""In-sandbox harness runner.

Executed as a script inside a throwaway interpreter (``python -S -s -B
runner.py``), either directly on the host or inside the grader container.
Reads one JSON request from stdin, loads the submitted program, optionally
evaluates a test program against it, and writes a single marker-prefixed JSON
frame to stdout before exiting.

Request::

    {"mode": "load" | "evaluate", "submission": str, "test_program": str | null,
     "entry": "run", "load_timeout": float, "eval_timeout": float,
     "limits": {"memory_mb": int, "cpu_seconds": int}, "max_log_bytes": int,
     "seed": int, "nonce": str}

Frame::

    {"status": "completed" | "faulted" | "timed_out", "phase": str,
     "value": ..., "reason": str | null, "logs": str, "nonce": str}

The parent only accepts the last frame carrying its nonce. Program output goes
to an in-memory buffer, so a frame can only reach stdout through a raw write.

Submissions run in this interpreter and can rebind any module attribute they
reach, this module's globals included. Everything the harness calls once
untrusted code has started is therefore bound into closures up front, and this
module is unlinked from ``sys.modules`` before the audit hook goes in.

Only the standard library is importable here; this file must not import
anything from the ``gradely`` package.
"""

from __future__ import annotations

import asyncio
import builtins
import inspect
import io
import json
import os
import random
import resource
import signal
import sys
import time
import types

# Importable by submissions and test programs. Everything else is refused once
# the audit hook is installed, because new imports would need to open files.
PRELOADED_MODULES = (
    "abc",
    "bisect",
    "collections",
    "collections.abc",
    "copy",
    "dataclasses",
    "datetime",
    "decimal",
    "enum",
    "fractions",
    "functools",
    "heapq",
    "itertools",
    "json",
    "math",
    "operator",
    "random",
    "re",
    "statistics",
    "string",
    "textwrap",
    "typing",
)

# Unlinked from sys.modules and from every loaded module's globals before the
# audit hook goes in. Re-importing any of them is then refused like any other
# new import.
HIDDEN_MODULES = (
    "__main__",
    "_posixsubprocess",
    "subprocess",
    "_signal",
    "signal",
    "gc",
    "resource",
)

BLOCKED_EVENTS = frozenset({"open", "import", "builtins.input", "sys.addaudithook", "sys.settrace", "sys.setprofile"})
FRAME_EVENTS = frozenset({"sys._getframe", "sys._current_frames", "sys._current_exceptions"})
BLOCKED_EVENT_PREFIXES = (
    "os.",
    "socket.",
    "subprocess.",
    "shutil.",
    "ctypes.",
    "glob.",
    "tempfile.",
    "urllib.",
    "http.",
    "ftplib.",
    "smtplib.",
    "poplib.",
    "imaplib.",
    "nntplib.",
    "telnetlib.",
    "webbrowser.",
    "sqlite3.",
    "mmap.",
    "fcntl.",
    "pty.",
    "resource.",
    "signal.",
    "syslog.",
    "winreg.",
    "gc.",
    "_thread.",
    "sys.monitoring.",
)
# Attribute reads that hand out frame objects, and through them harness locals.
FRAME_ATTRIBUTES = frozenset(
    {"tb_frame", "gi_frame", "cr_frame", "ag_frame", "f_back", "f_locals", "f_globals", "f_builtins"}
)

FRAME_MARKER = "@@gradely-outcome@@"
NO_ENTRY_POINT_MESSAGE = "No evaluation entry point defined"
MB = 1024 * 1024

for _module_name in PRELOADED_MODULES:
    __import__(_module_name)


class _Deadline(BaseException):
    pass


class FrameAccessDenied(PermissionError, ValueError):
    """Raised for frame introspection.

    Also a ``ValueError`` so stdlib helpers that read the caller frame
    (``namedtuple``, ``TypeVar``) fall back as they do without ``sys._getframe``.
    """


class UserCode:
    """Read-only view over the submission's exported names."""

    __slots__ = ("_exports",)

    def __init__(self, exports) -> None:
        object.__setattr__(self, "_exports", exports)

    def __getattr__(self, name: str) -> object:
        try:
            return self._exports[name]
        except KeyError:
            raise AttributeError(f"submission does not define {name!r}") from None

    def __setattr__(self, name: str, value: object) -> None:
        raise AttributeError("user_code is read-only")

    def __delattr__(self, name: str) -> None:
        raise AttributeError("user_code is read-only")

    def __getitem__(self, name: str) -> object:
        return self._exports[name]

    def __contains__(self, name: object) -> bool:
        return name in self._exports

    def __dir__(self) -> list[str]:
        return sorted(self._exports)

    def __repr__(self) -> str:
        return f"<user_code {sorted(self._exports)}>"


def _make_audit_hook():
    blocked_events = BLOCKED_EVENTS
    blocked_prefixes = BLOCKED_EVENT_PREFIXES
    frame_events = FRAME_EVENTS
    frame_attributes = FRAME_ATTRIBUTES
    denied = PermissionError
    frame_denied = FrameAccessDenied

    def audit(event: str, args: tuple) -> None:
        if event == "import":
            raise denied(f"import of {args[0]!r} is not permitted in the grading sandbox")
        if event == "object.__getattr__":
            if args[1] in frame_attributes:
                raise frame_denied(f"reading {args[1]} is not permitted in the grading sandbox")
            return
        if event in frame_events:
            raise frame_denied(f"{event} is not permitted in the grading sandbox")
        if event in blocked_events or event.startswith(blocked_prefixes):
            raise denied(f"{event} is not permitted in the grading sandbox")

    return audit


def _apply_limits(limits: dict) -> None:
    memory_mb = int(limits.get("memory_mb") or 0)
    cpu_seconds = int(limits.get("cpu_seconds") or 0)
    wanted = [
        (resource.RLIMIT_CORE, 0),
        (resource.RLIMIT_FSIZE, 0),
        (resource.RLIMIT_NOFILE, 64),
        (resource.RLIMIT_NPROC, 0),
    ]
    if memory_mb > 0:
        wanted.append((resource.RLIMIT_AS, memory_mb * MB))
    if cpu_seconds > 0:
        wanted.append((resource.RLIMIT_CPU, cpu_seconds))

    for kind, value in wanted:
        _, hard = resource.getrlimit(kind)
        if hard != resource.RLIM_INFINITY:
            value = min(value, hard)
        try:
            resource.setrlimit(kind, (value, hard))
        except (ValueError, OSError):
            continue


def _sever(names: tuple[str, ...]) -> list[types.ModuleType]:
    """Unlink ``names`` from sys.modules and from every loaded module's globals.

    Builtin functions owned by a severed module (``_posixsubprocess.fork_exec``,
    ``_signal.setitimer``) are dropped wherever another module re-exported them.
    The severed modules are returned so the caller keeps them alive.
    """
    severed = [sys.modules.pop(name) for name in names if name in sys.modules]
    targets = {id(module) for module in severed}
    if not targets:
        return severed

    for module in list(sys.modules.values()) + severed:
        namespace = getattr(module, "__dict__", None)
        if not isinstance(namespace, dict):
            continue
        for attr, value in list(namespace.items()):
            owner = value.__self__ if isinstance(value, types.BuiltinFunctionType) else None
            if id(value) in targets or id(owner) in targets:
                del namespace[attr]
    return severed


def _bind_harness(loop: asyncio.AbstractEventLoop):
    """Return ``(evaluate, on_alarm)`` closed over everything a pass calls.

    Must run before any untrusted code: rebinding ``builtins.exec``,
    ``signal.setitimer`` or this module's globals later does not reach the
    returned functions. Each loaded unit gets its own copy of the builtins.
    """
    compile_source = compile
    run_code = exec
    is_callable = callable
    is_instance = isinstance
    to_float = float
    to_text = str
    type_of = type
    copy_dict = dict
    sort = sorted
    sequence_types = (list, tuple)
    base_exception = BaseException
    deadline = _Deadline
    builtins_snapshot = dict(vars(builtins))
    module_type = types.ModuleType
    mapping_proxy = types.MappingProxyType
    user_code_type = UserCode
    setitimer = signal.setitimer
    real_timer = signal.ITIMER_REAL
    monotonic = time.monotonic
    reseed = random.seed
    is_awaitable = inspect.isawaitable
    ensure_future = asyncio.ensure_future
    wait = asyncio.wait
    run_until_complete = loop.run_until_complete
    no_entry_point = NO_ENTRY_POINT_MESSAGE

    def on_alarm(signum, frame) -> None:
        raise deadline()

    def describe(exc: BaseException) -> str:
        name = type_of(exc).__name__
        try:
            text = to_text(exc)
        except base_exception:
            text = ""
        return f"{name}: {text}" if text else name

    def exports_of(namespace: dict) -> dict[str, object]:
        declared = namespace.get("__all__")
        if is_instance(declared, sequence_types):
            return {name: namespace[name] for name in declared if is_instance(name, to_text) and name in namespace}
        return {
            name: value
            for name, value in namespace.items()
            if not name.startswith("_") and not is_instance(value, module_type)
        }

    def exec_unit(source: str, filename: str, module_name: str, timeout: float) -> dict:
        namespace = {"__name__": module_name, "__builtins__": copy_dict(builtins_snapshot)}
        code = compile_source(source, filename, "exec")
        setitimer(real_timer, timeout)
        try:
            run_code(code, namespace)
        finally:
            setitimer(real_timer, 0)
        return namespace

    def frame(status: str, phase: str, *, value=None, reason: str | None = None) -> dict:
        return {"status": status, "phase": phase, "value": value, "reason": reason}

    def await_verdict(awaitable, timeout: float):
        task = ensure_future(awaitable, loop=loop)
        # Backstop for coroutines that block the loop instead of awaiting.
        setitimer(real_timer, timeout + 0.25)
        try:
            done, _ = run_until_complete(wait({task}, timeout=timeout))
        finally:
            setitimer(real_timer, 0)
        if task not in done:
            task.cancel()
            return None, True
        return task.result(), False

    def evaluate(request: dict) -> dict:
        load_timeout = to_float(request.get("load_timeout") or 1.0)
        eval_timeout = to_float(request.get("eval_timeout") or 1.0)
        mode = request.get("mode")
        entry_name = request.get("entry") or "run"
        submission_source = request.get("submission") or ""
        test_source = request.get("test_program") or ""
        reseed(request.get("seed", 0))

        # Submission and test program share one load budget.
        load_started = monotonic()
        try:
            submission = exec_unit(submission_source, "<submission>", "solution", load_timeout)
        except deadline:
            return frame("timed_out", "load")
        except base_exception as exc:
            return frame("faulted", "load", reason=describe(exc))

        exports = exports_of(submission)
        if mode == "load":
            return frame("completed", "load", value={"exports": sort(exports)})

        user_code = user_code_type(mapping_proxy(copy_dict(exports)))
        remaining = load_timeout - (monotonic() - load_started)
        if remaining <= 0:
            return frame("timed_out", "test_load")
        try:
            test_namespace = exec_unit(test_source, "<test>", "test_program", remaining)
        except deadline:
            return frame("timed_out", "test_load")
        except base_exception as exc:
            return frame("faulted", "test_load", reason=describe(exc))

        entry = test_namespace.get(entry_name)
        if not is_callable(entry):
            return frame("completed", "evaluate", value={"pass": False, "message": no_entry_point})

        try:
            setitimer(real_timer, eval_timeout)
            try:
                verdict = entry(user_code)
            finally:
                setitimer(real_timer, 0)
            if is_awaitable(verdict):
                verdict, timed_out = await_verdict(verdict, eval_timeout)
                if timed_out:
                    return frame("timed_out", "evaluate")
        except deadline:
            return frame("timed_out", "evaluate")
        except base_exception as exc:
            return frame("faulted", "evaluate", reason=describe(exc))

        return frame("completed", "evaluate", value=verdict)

    return evaluate, on_alarm


def _truncate(text: str, limit: int, size=len) -> str:
    encoded = text.encode("utf-8", errors="replace")
    if size(encoded) <= limit:
        return text
    clipped = encoded[:limit].decode("utf-8", errors="ignore")
    return f"{clipped}\n...<truncated>"


def _emit(
    frame: dict,
    nonce: str,
    dumps=json.dumps,
    write=os.write,
    marker: str = FRAME_MARKER,
    stdout_fd: int = 1,
) -> None:
    # Collaborators are bound at definition time; programs may rebind the module attributes.
    frame["nonce"] = nonce
    try:
        body = dumps(frame, ensure_ascii=True, allow_nan=False)
    except (TypeError, ValueError) as exc:
        body = dumps(
            {
                "status": "faulted",
                "phase": frame.get("phase", "evaluate"),
                "value": None,
                "reason": f"Verdict is not JSON-serializable: {exc}",
                "logs": frame.get("logs", ""),
                "nonce": nonce,
            }
        )
    data = f"\n{marker}{body}\n".encode("utf-8")
    while data:
        written = write(stdout_fd, data)
        data = data[written:]


def main() -> None:
    request = json.loads(sys.stdin.read())
    nonce = str(request.pop("nonce", ""))
    emit = _emit
    truncate = _truncate
    finish = os._exit
    _apply_limits(request.get("limits") or {})
    max_log_bytes = int(request.get("max_log_bytes") or 8192)

    # The loop's self-pipe needs sockets, so it is created before the hook.
    # It is never made the current loop; programs only see it while it runs.
    loop = asyncio.new_event_loop()
    evaluate, on_alarm = _bind_harness(loop)
    signal.signal(signal.SIGALRM, on_alarm)
    audit = _make_audit_hook()

    capture = io.StringIO()
    sys.stdout = capture
    sys.stderr = capture
    sys.stdin = io.StringIO()
    severed = _sever(HIDDEN_MODULES)
    sys.addaudithook(audit)

    frame = evaluate(request)
    frame["logs"] = truncate(capture.getvalue(), max_log_bytes)
    emit(frame, nonce)
    del severed
    finish(0)


if __name__ == "__main__":
    main()
