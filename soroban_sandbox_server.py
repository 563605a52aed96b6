#!/usr/bin/env python3
"""MCP server provisioning one Soroban Docker sandbox per Stellar wallet."""

import asyncio
import contextlib
import enum
import hashlib
import json
import logging
import os
import re
import shlex
import sys
import time
import urllib.parse
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Optional, Union

from mcp.server.fastmcp import FastMCP

# ── Logging (stderr only; stdout is MCP protocol) ───────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("soroban-sandbox")

# ── Config ───────────────────────────────────────────────────────────────

RUNTIME_BIN = os.environ.get("SOROBAN_SANDBOX_RUNTIME", "docker")
DEFAULT_IMAGE = os.environ.get("SOROBAN_SANDBOX_IMAGE", "stellar-sandbox:v1")

SANDBOX_USER = "developer"
WORKSPACE_ROOT = "/home/developer/workspace"
PROJECT_NAME = "soroban-hello-world"
LANGUAGE_SERVER = "rust-analyzer"

# Sandbox names: "soroban-" + slug, at most 63 chars (DNS label)
NAME_PREFIX = "soroban-"
NAME_SLUG_MAX = 47
NAME_HASH_PREFIX_LEN = 16
NAME_HASH_LEN = 12

DEFAULT_TIMEOUT = 30.0
INSPECT_TIMEOUT = 10.0
CREATE_TIMEOUT = 60.0
STOP_TIMEOUT = 15.0
SCAFFOLD_TIMEOUT = 30.0
FILE_TIMEOUT = 10.0

# Bounded wait for a sandbox to report Running
START_ATTEMPTS = 2
START_POLL_ATTEMPTS = 5
START_POLL_DELAY = 0.5  # seconds, multiplied by the attempt number

# Directories skipped when listing a workspace
LIST_IGNORE = {"target", ".git", "node_modules"}


# ── Errors ───────────────────────────────────────────────────────────────


class SandboxError(RuntimeError):
    """Base error. ``transient`` tells callers whether retrying can help."""

    transient = False

    def __init__(self, message: str, transient: Optional[bool] = None):
        super().__init__(message)
        if transient is not None:
            self.transient = transient


class InvalidIdentity(SandboxError, ValueError):
    pass


class InvalidPath(SandboxError, ValueError):
    pass


class SandboxNotRunning(SandboxError):
    transient = True


class ProvisioningFailed(SandboxError):
    pass


class IOFailure(SandboxError):
    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message, transient=timed_out)
        self.timed_out = timed_out


class RuntimeUnavailable(SandboxError):
    transient = True


# ── Identity → sandbox name ──────────────────────────────────────────────

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]")
_SANDBOX_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


def name_for(identity: str) -> str:
    """Derive the sandbox name for a wallet identity.

    Short, already-clean identities map to ``soroban-<identity>``. Anything
    that had to be truncated or stripped keeps a readable prefix and gets a
    sha256 checksum suffix, so distinct identities stay distinct. Hashed
    names always contain a dash after the prefix and plain ones never do.
    """
    if not isinstance(identity, str) or not identity.strip():
        raise InvalidIdentity("Wallet identity must be a non-empty string")
    normalized = identity.strip().lower()
    slug = _SLUG_STRIP_RE.sub("", normalized)
    if slug == normalized and len(slug) <= NAME_SLUG_MAX:
        return f"{NAME_PREFIX}{slug}"
    digest = hashlib.sha256(normalized.encode()).hexdigest()[:NAME_HASH_LEN]
    return f"{NAME_PREFIX}{slug[:NAME_HASH_PREFIX_LEN]}-{digest}"


# ── Command execution bridge ─────────────────────────────────────────────


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""
    timed_out: bool = False
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def out(self) -> str:
        return self.stdout.decode(errors="replace")

    @property
    def err(self) -> str:
        return self.stderr.decode(errors="replace")


async def _settle(fut: asyncio.Future) -> bool:
    """Wait for ``fut`` through any number of cancellations.

    Returns True if the caller was cancelled meanwhile; re-raising is left
    to the caller. ``asyncio.wait`` never cancels ``fut`` itself.
    """
    interrupted = False
    while not fut.done():
        try:
            await asyncio.wait({fut})
        except asyncio.CancelledError:
            interrupted = True
    return interrupted


async def _reap(proc: asyncio.subprocess.Process) -> bool:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    return await _settle(asyncio.ensure_future(proc.wait()))


async def run(
    argv: list[str],
    timeout: float = DEFAULT_TIMEOUT,
    input_data: Optional[bytes] = None,
) -> CommandResult:
    """Run one external command. Never raises on a non-zero exit.

    ``input_data`` is streamed over stdin, which is how file content reaches
    a sandbox. A cancelled caller, however often it is cancelled, still
    waits for the process to exit (or hit its timeout) before the
    cancellation propagates, so nothing holding a lifecycle lock lets go in
    the middle of a runtime mutation.
    """
    t0 = time.perf_counter()
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE
            if input_data is not None
            else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise RuntimeUnavailable(f"Cannot launch {argv[0]}: {e}") from e

    pending = asyncio.ensure_future(
        asyncio.wait_for(proc.communicate(input=input_data), timeout=timeout)
    )
    cancelled = await _settle(pending)
    timed_out = isinstance(pending.exception(), asyncio.TimeoutError)
    if timed_out:
        cancelled = await _reap(proc) or cancelled
        log.warning(f"Timed out after {timeout}s: {shlex.join(argv[:3])}")
    if cancelled:
        log.info(f"Cancelled; {shlex.join(argv[:3])} finished first")
        raise asyncio.CancelledError()

    elapsed = (time.perf_counter() - t0) * 1000
    if timed_out:
        return CommandResult(
            exit_code=-1,
            stderr=f"Timed out after {timeout}s".encode(),
            timed_out=True,
            duration_ms=round(elapsed, 1),
        )

    stdout, stderr = pending.result()
    return CommandResult(
        exit_code=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout,
        stderr=stderr,
        duration_ms=round(elapsed, 1),
    )


_NOT_FOUND_MARKERS = ("no such container", "no such object")
_NOT_RUNNING_MARKERS = ("is not running",)
_EXISTS_MARKERS = ("already exists", "already in use")
_UNAVAILABLE_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
)


def classify(result: CommandResult) -> str:
    """Bucket a result: ok, timeout, unavailable, not_found, not_running,
    already_exists or error."""
    if result.timed_out:
        return "timeout"
    if result.exit_code == 0:
        return "ok"
    text = (result.err + "\n" + result.out).lower()
    if any(m in text for m in _UNAVAILABLE_MARKERS):
        return "unavailable"
    if any(m in text for m in _NOT_FOUND_MARKERS):
        return "not_found"
    if any(m in text for m in _NOT_RUNNING_MARKERS):
        return "not_running"
    if any(m in text for m in _EXISTS_MARKERS):
        return "already_exists"
    return "error"


def _exec_argv(
    binary: str,
    name: str,
    argv: list[str],
    interactive: bool = False,
    user: Optional[str] = None,
    workdir: Optional[str] = None,
    env: Optional[dict[str, str]] = None,
) -> list[str]:
    cmd = [binary, "exec"]
    if interactive:
        cmd.append("-i")
    if user:
        cmd.extend(["-u", user])
    if workdir:
        cmd.extend(["-w", workdir])
    for key, value in (env or {}).items():
        cmd.extend(["-e", f"{key}={value}"])
    cmd.append(name)
    cmd.extend(argv)
    return cmd


# ── Container runtime ────────────────────────────────────────────────────


class SandboxState(enum.Enum):
    ABSENT = "absent"
    STOPPED = "stopped"
    RUNNING = "running"


class DockerRuntime:
    """Thin wrapper over the docker CLI. Every call goes through ``run``."""

    def __init__(self, binary: Optional[str] = None):
        self.binary = binary or RUNTIME_BIN

    async def inspect_state(self, name: str) -> SandboxState:
        result = await run(
            [self.binary, "inspect", "-f", "{{.State.Running}}", name],
            timeout=INSPECT_TIMEOUT,
        )
        kind = classify(result)
        if kind == "ok":
            if result.out.strip() == "true":
                return SandboxState.RUNNING
            return SandboxState.STOPPED
        if kind == "not_found":
            return SandboxState.ABSENT
        raise RuntimeUnavailable(
            f"Cannot inspect {name}: {result.err.strip() or kind}"
        )

    async def create(
        self, name: str, image: str, env: Optional[dict[str, str]] = None
    ) -> CommandResult:
        cmd = [self.binary, "run", "-d", "--name", name]
        for key, value in (env or {}).items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend([image, "tail", "-f", "/dev/null"])
        return await run(cmd, timeout=CREATE_TIMEOUT)

    async def start(self, name: str) -> CommandResult:
        return await run([self.binary, "start", name], timeout=DEFAULT_TIMEOUT)

    async def stop(self, name: str) -> CommandResult:
        return await run(
            [self.binary, "stop", "-t", "5", name], timeout=STOP_TIMEOUT
        )

    async def remove(self, name: str, force: bool = True) -> CommandResult:
        cmd = [self.binary, "rm"]
        if force:
            cmd.append("-f")
        cmd.append(name)
        return await run(cmd, timeout=STOP_TIMEOUT)

    async def exec(
        self,
        name: str,
        argv: list[str],
        user: Optional[str] = None,
        workdir: Optional[str] = None,
        input_data: Optional[bytes] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> CommandResult:
        cmd = _exec_argv(
            self.binary,
            name,
            argv,
            interactive=input_data is not None,
            user=user,
            workdir=workdir,
        )
        return await run(cmd, timeout=timeout, input_data=input_data)


# ── Per-sandbox locks ────────────────────────────────────────────────────


class _NameLock:
    def __init__(self):
        self.cond = asyncio.Condition()
        self.readers = 0
        self.writer = False
        self.waiting_writers = 0
        self.users = 0


class _LockTable:
    """Shared/exclusive asyncio locks keyed by sandbox name.

    Lifecycle mutations take the exclusive side, file operations the shared
    side. Waiting writers block new readers. Entries are dropped once nobody
    holds or waits on them.
    """

    def __init__(self):
        self._locks: dict[str, _NameLock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _enter(self, name: str) -> _NameLock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = _NameLock()
        lock.users += 1
        return lock

    def _leave(self, name: str, lock: _NameLock) -> None:
        lock.users -= 1
        if lock.users == 0 and self._locks.get(name) is lock:
            del self._locks[name]

    @contextlib.asynccontextmanager
    async def shared(self, name: str):
        lock = self._enter(name)
        try:
            async with lock.cond:
                await lock.cond.wait_for(
                    lambda: not lock.writer and lock.waiting_writers == 0
                )
                lock.readers += 1
            try:
                yield
            finally:
                async with lock.cond:
                    lock.readers -= 1
                    lock.cond.notify_all()
        finally:
            self._leave(name, lock)

    @contextlib.asynccontextmanager
    async def exclusive(self, name: str):
        lock = self._enter(name)
        try:
            async with lock.cond:
                lock.waiting_writers += 1
                try:
                    await lock.cond.wait_for(
                        lambda: not lock.writer and lock.readers == 0
                    )
                finally:
                    lock.waiting_writers -= 1
                    lock.cond.notify_all()
                lock.writer = True
            try:
                yield
            finally:
                async with lock.cond:
                    lock.writer = False
                    lock.cond.notify_all()
        finally:
            self._leave(name, lock)


# ── Workspace paths ──────────────────────────────────────────────────────


def safe_path(path: str) -> str:
    """Normalize a workspace-relative path or raise InvalidPath.

    Leading separators and ``.`` segments are dropped; ``..`` segments are
    rejected outright.
    """
    if not isinstance(path, str) or "\x00" in path:
        raise InvalidPath(f"Invalid path: {path!r}")
    parts = []
    for part in path.replace("\\", "/").split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            raise InvalidPath(f"Path escapes workspace: {path}")
        parts.append(part)
    if not parts:
        raise InvalidPath(f"Empty path: {path!r}")
    return "/".join(parts)


def _workspace_path(rel: str) -> str:
    return f"{WORKSPACE_ROOT.rstrip('/')}/{rel}"


def _is_ignored(rel: str) -> bool:
    # Only directories are skipped; a file called "target" is listed.
    return any(part in LIST_IGNORE for part in rel.split("/")[:-1])


# Script is constant; the target path only ever arrives as $1.
_WRITE_SCRIPT = 'mkdir -p "$(dirname "$1")" && cat > "$1"'


# ── Sessions ─────────────────────────────────────────────────────────────


@dataclass
class Session:
    sandbox_ref: str
    workspace_path: str
    established_at: float = field(default_factory=time.time)


def _first(value):
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _session_params(metadata) -> Mapping:
    if isinstance(metadata, Mapping):
        return metadata
    if isinstance(metadata, bytes):
        metadata = metadata.decode()
    if not isinstance(metadata, str):
        raise TypeError(f"Unsupported session metadata: {type(metadata).__name__}")
    query = metadata
    if "?" in metadata:
        query = urllib.parse.urlsplit(metadata).query
    return dict(urllib.parse.parse_qsl(query, keep_blank_values=True))


def parse_session(metadata) -> Optional[Session]:
    """Extract (sandbox ref, workspace) from connection metadata.

    Accepts a parameter mapping, a connection URL or a bare query string.
    Returns None when the sandbox reference is missing or the metadata
    can't be parsed, so the caller can reject the connection before
    upgrading it.
    """
    try:
        params = _session_params(metadata)
    except (TypeError, ValueError) as e:
        log.warning(f"Unparseable session metadata: {e}")
        return None

    ref = _first(params.get("sandboxRef"))
    if ref is None:
        ref = _first(params.get("containerId"))
    if not isinstance(ref, str) or not ref.strip():
        return None

    workspace = _first(params.get("workspace"))
    if not isinstance(workspace, str) or not workspace.strip():
        workspace = WORKSPACE_ROOT
    return Session(sandbox_ref=ref.strip(), workspace_path=workspace.strip())


def language_server_argv(
    session: Session, name: str, binary: Optional[str] = None
) -> list[str]:
    """Command the relay spawns to attach a language server to ``name``."""
    return _exec_argv(
        binary or RUNTIME_BIN,
        name,
        [LANGUAGE_SERVER],
        interactive=True,
        workdir=session.workspace_path,
        env={"RUST_BACKTRACE": "1"},
    )


# ── Results ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ReadyResult:
    ready: bool
    name: str
    detail: str
    error: Optional[str] = None
    retryable: bool = False


@dataclass(frozen=True)
class TeardownResult:
    deleted: bool
    name: str
    detail: str


class _Transition(enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"


# ── Sandbox manager ──────────────────────────────────────────────────────


class SandboxManager:
    """Provisions, repairs and tears down per-wallet sandboxes.

    Holds no sandbox state of its own: every decision re-reads the runtime.
    """

    def __init__(
        self, runtime: Optional[DockerRuntime] = None, image: Optional[str] = None
    ):
        self.runtime = runtime or DockerRuntime()
        self.image = image or DEFAULT_IMAGE
        self._locks = _LockTable()

    # ── Lifecycle ────────────────────────────────────────────────────

    async def ensure_ready(self, identity: str) -> ReadyResult:
        name = name_for(identity)
        async with self._locks.exclusive(name):
            try:
                detail = await self._ensure_ready_locked(name)
            except SandboxError as e:
                log.error(f"Sandbox {name} not ready: {e}")
                return ReadyResult(
                    ready=False,
                    name=name,
                    detail=str(e),
                    error=type(e).__name__,
                    retryable=e.transient,
                )
        return ReadyResult(ready=True, name=name, detail=detail)

    async def _ensure_ready_locked(self, name: str) -> str:
        state = await self.runtime.inspect_state(name)
        if state is SandboxState.RUNNING:
            if await self._marker_present(name):
                log.info(f"Sandbox {name} already running, reusing it")
                return f"Sandbox {name} already exists and is ready"
            log.info(f"Sandbox {name} is running but {PROJECT_NAME} is missing")
        elif state is SandboxState.STOPPED:
            log.info(f"Sandbox {name} exists but is stopped, starting it")
            await self._start(name)
        else:
            await self._create(name)

        await self._scaffold(name)
        return f"Sandbox {name} ready for use"

    async def _await_running(self, name: str) -> _Transition:
        transition = _Transition.PENDING
        attempt = 0
        while transition is _Transition.PENDING:
            attempt += 1
            if await self.runtime.inspect_state(name) is SandboxState.RUNNING:
                transition = _Transition.CONFIRMED
            elif attempt >= START_POLL_ATTEMPTS:
                transition = _Transition.TIMED_OUT
            else:
                await asyncio.sleep(START_POLL_DELAY * attempt)
        return transition

    async def _start(self, name: str, recreate: bool = True) -> None:
        for attempt in range(1, START_ATTEMPTS + 1):
            result = await self.runtime.start(name)
            kind = classify(result)
            if kind == "not_found":
                # At most one recreate per ensure_ready.
                if not recreate:
                    raise ProvisioningFailed(
                        f"Sandbox {name} vanished right after creation",
                        transient=True,
                    )
                log.warning(f"Sandbox {name} vanished before start, recreating")
                await self._create(name)
                return
            if kind == "unavailable":
                raise RuntimeUnavailable(result.err.strip())
            if kind != "ok":
                log.warning(
                    f"Start {name} attempt {attempt} failed: "
                    f"{result.err.strip() or kind}"
                )
            if await self._await_running(name) is _Transition.CONFIRMED:
                return
        raise ProvisioningFailed(
            f"Sandbox {name} did not reach running state", transient=True
        )

    async def _create(self, name: str) -> None:
        log.info(f"Creating sandbox {name} from {self.image}")
        result = await self.runtime.create(
            name,
            self.image,
            env={"STELLAR_HOME": f"{WORKSPACE_ROOT}/.stellar"},
        )
        kind = classify(result)
        if kind == "already_exists":
            log.info(f"Sandbox {name} was created concurrently, adopting it")
        elif kind == "unavailable":
            raise RuntimeUnavailable(result.err.strip())
        elif kind != "ok":
            # Never retried here; a timed-out create may still finish
            # daemon-side and be adopted on the next call.
            raise ProvisioningFailed(
                f"Create failed for {name}: {result.err.strip() or kind}",
                transient=result.timed_out,
            )
        if await self._await_running(name) is not _Transition.CONFIRMED:
            await self._start(name, recreate=False)

    async def _dir_exists(self, name: str, path: str) -> bool:
        result = await self.runtime.exec(
            name, ["test", "-d", path], timeout=INSPECT_TIMEOUT
        )
        if result.ok:
            return True
        if result.exit_code == 1 and not result.stderr.strip():
            return False
        if classify(result) == "unavailable":
            raise RuntimeUnavailable(result.err.strip())
        raise IOFailure(
            f"Probe of {path} failed in {name}: {result.err.strip()}",
            timed_out=result.timed_out,
        )

    async def _marker_present(self, name: str) -> bool:
        return await self._dir_exists(name, _workspace_path(PROJECT_NAME))

    async def _scaffold(self, name: str) -> None:
        if await self._marker_present(name):
            return
        log.info(f"Initializing {PROJECT_NAME} in {name}")
        result = await self.runtime.exec(
            name,
            ["stellar", "contract", "init", PROJECT_NAME],
            user=SANDBOX_USER,
            workdir=WORKSPACE_ROOT,
            timeout=SCAFFOLD_TIMEOUT,
        )
        kind = classify(result)
        if kind == "unavailable":
            raise RuntimeUnavailable(result.err.strip())
        if kind == "already_exists":
            log.info(f"{PROJECT_NAME} already initialized in {name}")
        elif kind != "ok":
            log.error(f"Contract init in {name} failed: {result.err.strip() or kind}")

        if not await self._marker_present(name):
            raise ProvisioningFailed(
                f"{PROJECT_NAME} was not created in {name}: "
                f"{result.err.strip() or 'marker missing'}",
                transient=result.timed_out,
            )

    async def _is_running(self, name: str) -> bool:
        try:
            state = await self.runtime.inspect_state(name)
        except SandboxError as e:
            log.warning(f"Health check for {name} failed: {e}")
            return False
        return state is SandboxState.RUNNING

    async def health_check(self, identity: str) -> bool:
        return await self._is_running(name_for(identity))

    async def _require_running(self, name: str) -> None:
        if not await self._is_running(name):
            raise SandboxNotRunning(f"Sandbox {name} is not running")

    async def require_ready(self, identity: str) -> None:
        await self._require_running(name_for(identity))

    async def teardown(self, identity: str) -> TeardownResult:
        name = name_for(identity)
        async with self._locks.exclusive(name):
            try:
                state = await self._teardown_locked(name)
            except SandboxError as e:
                log.error(f"Teardown of {name} failed: {e}")
                return TeardownResult(deleted=False, name=name, detail=str(e))
        if state is not SandboxState.ABSENT:
            return TeardownResult(
                deleted=False,
                name=name,
                detail=f"Sandbox {name} is still {state.value}",
            )
        log.info(f"Sandbox {name} deleted")
        return TeardownResult(deleted=True, name=name, detail=f"Sandbox {name} deleted")

    async def _teardown_locked(self, name: str) -> SandboxState:
        stop = await self.runtime.stop(name)
        if not stop.ok:
            reason = stop.err.strip() or classify(stop)
            log.info(f"Stop {name}: {reason}, removing anyway")

        remove = await self.runtime.remove(name, force=True)
        kind = classify(remove)
        if kind == "not_found":
            log.info(f"Sandbox {name} already absent")
        elif kind != "ok":
            log.warning(f"Remove {name} failed: {remove.err.strip() or kind}")

        return await self.runtime.inspect_state(name)

    # ── Sessions ─────────────────────────────────────────────────────

    async def resolve_session(self, session: Session) -> str:
        """Map a session's sandbox reference to a running sandbox name."""
        ref = session.sandbox_ref
        if ref.startswith(NAME_PREFIX) and _SANDBOX_NAME_RE.match(ref):
            name = ref
        else:
            name = name_for(ref)
        await self._require_running(name)
        return name

    # ── Workspace files ──────────────────────────────────────────────

    async def _exec_file_op(
        self,
        identity: str,
        argv: list[str],
        action: str,
        input_data: Optional[bytes] = None,
        user: Optional[str] = None,
    ) -> CommandResult:
        name = name_for(identity)
        async with self._locks.shared(name):
            await self._require_running(name)
            result = await self.runtime.exec(
                name, argv, user=user, input_data=input_data, timeout=FILE_TIMEOUT
            )
        if not result.ok:
            raise IOFailure(
                f"Failed to {action}: {result.err.strip() or classify(result)}",
                timed_out=result.timed_out,
            )
        return result

    async def list_files(
        self, identity: str, project: Optional[str] = None
    ) -> list[str]:
        root = WORKSPACE_ROOT.rstrip("/")
        if project:
            root = _workspace_path(safe_path(project))
        name = name_for(identity)
        async with self._locks.shared(name):
            await self._require_running(name)
            result = await self.runtime.exec(
                name, ["find", root, "-type", "f"], timeout=FILE_TIMEOUT
            )
            if not result.ok:
                if result.timed_out:
                    raise IOFailure(f"Failed to list {root}: timed out", timed_out=True)
                if not await self._dir_exists(name, root):
                    return []
                # Entries can vanish mid-walk; keep what find printed.
                log.warning(
                    f"Partial listing of {root} in {name}: "
                    f"{result.err.strip() or classify(result)}"
                )
        prefix = root + "/"
        files = []
        for line in result.out.splitlines():
            if not line.startswith(prefix):
                continue
            rel = line[len(prefix):]
            if rel and not _is_ignored(rel):
                files.append(rel)
        return files

    async def read_file(self, identity: str, path: str) -> bytes:
        rel = safe_path(path)
        result = await self._exec_file_op(
            identity, ["cat", "--", _workspace_path(rel)], f"read {rel}"
        )
        return result.stdout

    async def write_file(
        self, identity: str, path: str, content: Union[str, bytes]
    ) -> int:
        rel = safe_path(path)
        data = content.encode() if isinstance(content, str) else content
        await self._exec_file_op(
            identity,
            ["sh", "-c", _WRITE_SCRIPT, "sh", _workspace_path(rel)],
            f"write {rel}",
            input_data=data,
            user=SANDBOX_USER,
        )
        return len(data)

    async def create_folder(self, identity: str, path: str) -> None:
        rel = safe_path(path)
        await self._exec_file_op(
            identity,
            ["mkdir", "-p", "--", _workspace_path(rel)],
            f"create folder {rel}",
            user=SANDBOX_USER,
        )

    async def delete_file(self, identity: str, path: str) -> None:
        rel = safe_path(path)
        await self._exec_file_op(
            identity,
            ["rm", "--", _workspace_path(rel)],
            f"delete {rel}",
            user=SANDBOX_USER,
        )

    async def delete_folder(self, identity: str, path: str) -> None:
        rel = safe_path(path)
        await self._exec_file_op(
            identity,
            ["rm", "-r", "-f", "--", _workspace_path(rel)],
            f"delete folder {rel}",
            user=SANDBOX_USER,
        )


# ── MCP Server ───────────────────────────────────────────────────────────

mcp_server = FastMCP(
    "soroban-sandbox",
    instructions=(
        "Each Stellar wallet gets one Docker sandbox with a Soroban project in "
        f"{WORKSPACE_ROOT}/{PROJECT_NAME}. Call ensure_ready before anything else; "
        "it is safe to call repeatedly. Use health for a cheap running check, "
        "list_files/read_file/write_file to edit the workspace, and teardown "
        "to delete the sandbox. route_session validates a language-server "
        "connection URL (sandboxRef, workspace) and returns the command to relay."
    ),
)

manager = SandboxManager()


def _format_error(e: SandboxError) -> str:
    suffix = " (retryable)" if e.transient else ""
    return f"Error: {e}{suffix}"


@mcp_server.tool()
async def ensure_ready(wallet: str) -> str:
    """
    Create, restart or repair the wallet's sandbox until it is ready.

    Args:
        wallet: Stellar public key identifying the user.

    Returns:
        Readiness summary; failures say whether a retry may help.
    """
    try:
        result = await manager.ensure_ready(wallet)
    except SandboxError as e:
        return _format_error(e)
    if result.ready:
        return result.detail
    suffix = " (retryable)" if result.retryable else ""
    return f"Error: {result.error}: {result.detail}{suffix}"


@mcp_server.tool()
async def health(wallet: str) -> str:
    """Report whether the wallet's sandbox is running."""
    try:
        running = await manager.health_check(wallet)
    except SandboxError as e:
        return _format_error(e)
    return "running" if running else "not running"


@mcp_server.tool()
async def teardown(wallet: str) -> str:
    """
    Stop and remove the wallet's sandbox. Safe to repeat.

    Args:
        wallet: Stellar public key identifying the user.
    """
    try:
        result = await manager.teardown(wallet)
    except SandboxError as e:
        return _format_error(e)
    return result.detail if result.deleted else f"Error: {result.detail}"


@mcp_server.tool()
async def list_files(wallet: str, project: str = "") -> str:
    """
    List files in the sandbox workspace, one relative path per line.

    Args:
        wallet: Stellar public key identifying the user.
        project: Optional project directory inside the workspace.
    """
    try:
        files = await manager.list_files(wallet, project or None)
    except SandboxError as e:
        return _format_error(e)
    return "\n".join(files)


@mcp_server.tool()
async def read_file(wallet: str, path: str) -> str:
    """
    Read a file from the sandbox workspace.

    Args:
        wallet: Stellar public key identifying the user.
        path: Path relative to the workspace root.
    """
    try:
        data = await manager.read_file(wallet, path)
    except SandboxError as e:
        return _format_error(e)
    return data.decode(errors="replace")


@mcp_server.tool()
async def write_file(wallet: str, path: str, content: str) -> str:
    """
    Overwrite a file in the sandbox workspace.

    Args:
        wallet: Stellar public key identifying the user.
        path: Path relative to the workspace root.
        content: Full file content.
    """
    try:
        size = await manager.write_file(wallet, path, content)
    except SandboxError as e:
        return _format_error(e)
    return f"Wrote {size} bytes to {safe_path(path)}"


@mcp_server.tool()
async def create_folder(wallet: str, path: str) -> str:
    """Create a directory (and parents) in the sandbox workspace."""
    try:
        await manager.create_folder(wallet, path)
    except SandboxError as e:
        return _format_error(e)
    return f"Created folder {safe_path(path)}"


@mcp_server.tool()
async def delete_file(wallet: str, path: str) -> str:
    """Delete a file from the sandbox workspace."""
    try:
        await manager.delete_file(wallet, path)
    except SandboxError as e:
        return _format_error(e)
    return f"Deleted {safe_path(path)}"


@mcp_server.tool()
async def delete_folder(wallet: str, path: str) -> str:
    """Delete a directory tree from the sandbox workspace."""
    try:
        await manager.delete_folder(wallet, path)
    except SandboxError as e:
        return _format_error(e)
    return f"Deleted folder {safe_path(path)}"


@mcp_server.tool()
async def route_session(url: str) -> str:
    """
    Validate a language-server connection request.

    Args:
        url: Connection URL or query string carrying sandboxRef and workspace.

    Returns:
        JSON with the sandbox name, workspace path and relay command.
    """
    session = parse_session(url)
    if session is None:
        return "Error: missing sandboxRef parameter"
    try:
        name = await manager.resolve_session(session)
    except SandboxError as e:
        return _format_error(e)
    return json.dumps(
        {
            "sandbox": name,
            "workspace": session.workspace_path,
            "command": language_server_argv(session, name, manager.runtime.binary),
        }
    )


# ── Entry point ──────────────────────────────────────────────────────────


def main():
    mcp_server.run(transport="stdio")


if __name__ == "__main__":
    main()
