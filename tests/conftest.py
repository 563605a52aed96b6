from __future__ import annotations

import json
import os
from pathlib import Path

import pytest


def _configure_module(sm_mod, monkeypatch: pytest.MonkeyPatch, paths: dict[str, Path]) -> None:
    """Point module globals at the fake workspace and shrink poll delays."""
    monkeypatch.setattr(sm_mod, "WORKSPACE_ROOT", str(paths["workspace_dir"]))
    monkeypatch.setattr(sm_mod, "START_POLL_DELAY", 0.01)


def _manager(sm_mod, paths: dict[str, Path], **kwargs):
    runtime = sm_mod.DockerRuntime(binary=kwargs.pop("binary", str(paths["docker"])))
    return sm_mod.SandboxManager(runtime=runtime, **kwargs)


def _docker_calls(paths: dict[str, Path]) -> list[list[str]]:
    log_file = paths["docker_log"]
    if not log_file.exists():
        return []
    return [json.loads(line) for line in log_file.read_text().splitlines() if line]


def _stellar_calls(paths: dict[str, Path]) -> list[list[str]]:
    log_file = paths["stellar_log"]
    if not log_file.exists():
        return []
    return [json.loads(line) for line in log_file.read_text().splitlines() if line]


def _fake_state(paths: dict[str, Path]) -> dict:
    state_file = paths["state_file"]
    if not state_file.exists():
        return {"containers": {}}
    return json.loads(state_file.read_text())


WALLET = "GBUQWP3KXZHL6M2JQ7C4VTZ5L6K7XQ3W2J6N4YF7QTS5R3D2X6LZHQ4K"


_FAKE_DOCKER_SCRIPT = """#!/usr/bin/env python3
import json
import os
import subprocess
import sys


STATE_PATH = os.environ.get("FAKE_DOCKER_STATE")
if not STATE_PATH:
    print("FAKE_DOCKER_STATE is required", file=sys.stderr)
    sys.exit(2)


def load_state():
    if os.path.exists(STATE_PATH):
        with open(STATE_PATH) as f:
            return json.load(f)
    return {"containers": {}, "images": ["stellar-sandbox:v1"]}


def save_state(state):
    tmp = STATE_PATH + ".tmp"
    with open(tmp, "w") as f:
        json.dump(state, f)
    os.replace(tmp, STATE_PATH)


def die(msg, code=1):
    print(msg, file=sys.stderr)
    sys.exit(code)


def no_such_container(name):
    die(f"Error response from daemon: No such container: {name}")


def handle_inspect(args, state):
    name = args[-1]
    info = state["containers"].get(name)
    if info is None:
        die(f"Error: No such object: {name}")
    print("true" if info["running"] else "false")
    return 0


def handle_run(args, state):
    name = None
    image = None
    env = {}
    i = 0
    while i < len(args):
        tok = args[i]
        if tok == "-d":
            i += 1
            continue
        if tok in ("--name", "-e"):
            if i + 1 >= len(args):
                die(f"missing value for {tok}")
            if tok == "--name":
                name = args[i + 1]
            else:
                key, _, value = args[i + 1].partition("=")
                env[key] = value
            i += 2
            continue
        image = tok
        break
    if not name or not image:
        die("invalid run command")
    if name in state["containers"]:
        die(
            f'docker: Error response from daemon: Conflict. The container name "/{name}" '
            'is already in use by container "0123abcd".',
            125,
        )
    if image not in state["images"]:
        die(
            f"Unable to find image '{image}' locally\\n"
            f"docker: Error response from daemon: pull access denied for {image}, "
            "repository does not exist",
            125,
        )
    running = os.environ.get("FAKE_DOCKER_BOOT_STOPPED") != "1"
    state["containers"][name] = {"image": image, "running": running, "env": env}
    save_state(state)
    print("0123abcd" + name)
    return 0


def handle_start(args, state):
    name = args[-1]
    if name not in state["containers"]:
        no_such_container(name)
    state["containers"][name]["running"] = True
    save_state(state)
    print(name)
    return 0


def handle_stop(args, state):
    name = args[-1]
    if name not in state["containers"]:
        no_such_container(name)
    state["containers"][name]["running"] = False
    save_state(state)
    print(name)
    return 0


def handle_rm(args, state):
    name = args[-1]
    if name not in state["containers"]:
        no_such_container(name)
    del state["containers"][name]
    save_state(state)
    print(name)
    return 0


def handle_exec(args, state):
    workdir = None
    env = dict(os.environ)
    i = 0
    while i < len(args):
        tok = args[i]
        if tok == "-i":
            i += 1
            continue
        if tok in ("-u", "-w", "-e"):
            if i + 1 >= len(args):
                die(f"missing {tok} value")
            if tok == "-w":
                workdir = args[i + 1]
            elif tok == "-e":
                key, _, value = args[i + 1].partition("=")
                env[key] = value
            i += 2
            continue
        break

    if i >= len(args):
        die("missing container name")
    name = args[i]
    cmd = args[i + 1:]

    info = state["containers"].get(name)
    if info is None:
        no_such_container(name)
    if not info["running"]:
        die(f"Error response from daemon: container {name} is not running")
    if workdir and not os.path.isdir(workdir):
        die(f"OCI runtime exec failed: chdir to cwd ({workdir}) failed")
    if not cmd:
        die("no command given")
    return subprocess.run(cmd, cwd=workdir, env=env).returncode


HANDLERS = {
    "inspect": handle_inspect,
    "run": handle_run,
    "start": handle_start,
    "stop": handle_stop,
    "rm": handle_rm,
    "exec": handle_exec,
}


def main():
    argv = sys.argv[1:]
    log_path = os.environ.get("FAKE_DOCKER_LOG")
    if log_path:
        with open(log_path, "a") as f:
            f.write(json.dumps(argv) + "\\n")
    if os.environ.get("FAKE_DOCKER_UNAVAILABLE") == "1":
        die(
            "Cannot connect to the Docker daemon at unix:///var/run/docker.sock. "
            "Is the docker daemon running?"
        )
    if not argv:
        die("missing command")
    handler = HANDLERS.get(argv[0])
    if handler is None:
        die(f"unsupported command: {argv[0]}")
    return handler(argv[1:], load_state())


if __name__ == "__main__":
    sys.exit(main())
"""


_FAKE_STELLAR_SCRIPT = """#!/usr/bin/env python3
import json
import os
import sys


def main():
    argv = sys.argv[1:]
    log_path = os.environ.get("FAKE_STELLAR_LOG")
    if log_path:
        with open(log_path, "a") as f:
            f.write(json.dumps(argv) + "\\n")
    if argv[:2] != ["contract", "init"] or len(argv) < 3:
        print(f"error: unsupported command {argv}", file=sys.stderr)
        return 2
    if os.environ.get("FAKE_STELLAR_FAIL") == "1":
        print("error: failed to fetch contract template", file=sys.stderr)
        return 1
    project = argv[2]
    if os.path.exists(project):
        print(f"error: {project} already exists", file=sys.stderr)
        return 1
    src = os.path.join(project, "contracts", "hello-world", "src")
    os.makedirs(src)
    with open(os.path.join(src, "lib.rs"), "w") as f:
        f.write("#![no_std]\\n")
    with open(os.path.join(project, "Cargo.toml"), "w") as f:
        f.write("[workspace]\\n")
    build = os.path.join(project, "target", "debug")
    os.makedirs(build)
    with open(os.path.join(build, "artifact.wasm"), "w") as f:
        f.write("wasm")
    print(f"Initialized {project}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
"""


@pytest.fixture
def mock_docker_cli(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> dict[str, Path]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    fake_docker = bin_dir / "docker"
    fake_docker.write_text(_FAKE_DOCKER_SCRIPT)
    fake_docker.chmod(0o755)
    fake_stellar = bin_dir / "stellar"
    fake_stellar.write_text(_FAKE_STELLAR_SCRIPT)
    fake_stellar.chmod(0o755)

    state_file = tmp_path / "fake-docker-state.json"
    docker_log = tmp_path / "docker-calls.jsonl"
    stellar_log = tmp_path / "stellar-calls.jsonl"
    workspace_dir = tmp_path / "workspace"
    workspace_dir.mkdir()

    old_path = os.environ.get("PATH", "")
    monkeypatch.setenv("PATH", f"{bin_dir}:{old_path}")
    monkeypatch.setenv("FAKE_DOCKER_STATE", str(state_file))
    monkeypatch.setenv("FAKE_DOCKER_LOG", str(docker_log))
    monkeypatch.setenv("FAKE_STELLAR_LOG", str(stellar_log))
    for var in ("FAKE_DOCKER_UNAVAILABLE", "FAKE_DOCKER_BOOT_STOPPED", "FAKE_STELLAR_FAIL"):
        monkeypatch.delenv(var, raising=False)

    return {
        "tmp_path": tmp_path,
        "docker": fake_docker,
        "state_file": state_file,
        "docker_log": docker_log,
        "stellar_log": stellar_log,
        "workspace_dir": workspace_dir,
    }
