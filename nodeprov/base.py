"""Shared building blocks for container-backed cluster nodes.

This module holds the command runner used to drive a container engine
binary, the error raised when such a command fails, the provider
capability record, and the node handle that runs commands inside a
node container.
"""

from __future__ import annotations

import io
import shutil
import subprocess
from dataclasses import dataclass
from typing import IO, Any, Iterator

__all__ = [
    "RunError",
    "ProviderInfo",
    "Cmd",
    "NodeCmd",
    "ContainerNode",
    "output",
    "output_lines",
    "run_error_for",
    "join_host_port",
]


class RunError(Exception):
    """A command exited unsuccessfully or could not be started.

    ``output`` holds everything the command wrote to stdout and stderr.
    ``returncode`` is ``None`` when the command never finished.
    """

    def __init__(self, command: list[str], output: bytes = b"", returncode: int | None = None):
        self.command = list(command)
        self.output = output
        self.returncode = returncode
        if returncode is None:
            reason = "did not complete"
        else:
            reason = f"exit status {returncode}"
        super().__init__(f'command "{" ".join(self.command)}" failed with error: {reason}')


@dataclass
class ProviderInfo:
    """Capabilities of the container engine behind a provider."""

    rootless: bool = False
    cgroup2: bool = False
    supports_memory_limit: bool = False
    supports_pids_limit: bool = False
    supports_cpu_shares: bool = False


def _write(writer: IO[Any], data: bytes) -> None:
    if not data:
        return
    if isinstance(writer, io.TextIOBase):
        writer.write(data.decode(errors="replace"))
        return
    try:
        writer.write(data)
    except TypeError:
        writer.write(data.decode(errors="replace"))


def _parse_env(entries: tuple[str, ...]) -> dict[str, str]:
    env: dict[str, str] = {}
    for entry in entries:
        key, sep, value = entry.partition("=")
        if sep:
            env[key] = value
    return env


class Cmd:
    """A command run on the host, configured fluently before ``run``."""

    def __init__(self, command: str, *args: str, timeout: float | None = None):
        self.command = command
        self.args = list(args)
        self.timeout = timeout
        self._env: dict[str, str] | None = None
        self._stdin: IO[Any] | None = None
        self._stdout: IO[Any] | None = None
        self._stderr: IO[Any] | None = None

    def set_env(self, *args: str) -> "Cmd":
        """Replace the environment with ``KEY=VALUE`` entries."""
        self._env = _parse_env(args)
        return self

    def set_stdin(self, reader: IO[Any]) -> "Cmd":
        self._stdin = reader
        return self

    def set_stdout(self, writer: IO[Any]) -> "Cmd":
        self._stdout = writer
        return self

    def set_stderr(self, writer: IO[Any]) -> "Cmd":
        self._stderr = writer
        return self

    def _argv(self) -> list[str]:
        executable = shutil.which(self.command) or self.command
        return [executable, *self.args]

    def run(self) -> None:
        """Run the command, raising RunError unless it exits with status 0."""
        argv = self._argv()
        shown = [self.command, *self.args]
        merged = self._stderr is self._stdout
        kwargs: dict[str, Any] = {
            "stdout": subprocess.PIPE,
            "stderr": subprocess.STDOUT if merged else subprocess.PIPE,
            "env": self._env,
            "timeout": self.timeout,
            "check": False,
        }
        if self._stdin is not None:
            data = self._stdin.read()
            kwargs["input"] = data.encode() if isinstance(data, str) else data
        else:
            kwargs["stdin"] = subprocess.DEVNULL
        try:
            proc = subprocess.run(argv, **kwargs)
        except subprocess.TimeoutExpired as exc:
            partial = (exc.output or b"") + (exc.stderr or b"")
            raise RunError(shown, partial, None) from exc
        except OSError as exc:
            raise RunError(shown, str(exc).encode(), None) from exc

        if merged:
            combined = proc.stdout or b""
            if self._stdout is not None:
                _write(self._stdout, combined)
        else:
            out = proc.stdout or b""
            err = proc.stderr or b""
            if self._stdout is not None:
                _write(self._stdout, out)
            if self._stderr is not None:
                _write(self._stderr, err)
            combined = out + err
        if proc.returncode != 0:
            raise RunError(shown, combined, proc.returncode)


def output(cmd: "Cmd | NodeCmd") -> bytes:
    """Run ``cmd`` and return what it wrote to stdout."""
    buffer = io.BytesIO()
    cmd.set_stdout(buffer)
    cmd.run()
    return buffer.getvalue()


def _lines(data: bytes) -> Iterator[str]:
    text = data.decode(errors="replace")
    parts = text.split("\n")
    if parts and parts[-1] == "":
        parts.pop()
    for part in parts:
        yield part[:-1] if part.endswith("\r") else part


def output_lines(cmd: "Cmd | NodeCmd") -> list[str]:
    """Run ``cmd`` and return its stdout split into lines."""
    return list(_lines(output(cmd)))


def run_error_for(err: BaseException | None) -> RunError | None:
    """Find the RunError that caused ``err``, if there is one."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, RunError):
            return err
        seen.add(id(err))
        err = err.__cause__ or err.__context__
    return None


def join_host_port(host: str, port: int | str) -> str:
    """Join host and port, bracketing hosts that contain a colon."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class NodeCmd:
    """A command run inside a node container through ``<engine> exec``."""

    def __init__(self, engine: str, name_or_id: str, command: str, *args: str, timeout: float | None = None):
        self.engine = engine
        self.name_or_id = name_or_id
        self.command = command
        self.args = list(args)
        self.timeout = timeout
        self.env: list[str] = []
        self._stdin: IO[Any] | None = None
        self._stdout: IO[Any] | None = None
        self._stderr: IO[Any] | None = None

    def build_args(self) -> list[str]:
        """Arguments passed to the engine binary."""
        args = ["exec", "--privileged"]
        if self._stdin is not None:
            args.append("-i")
        for entry in self.env:
            args += ["-e", entry]
        return [*args, self.name_or_id, self.command, *self.args]

    def run(self) -> None:
        cmd = Cmd(self.engine, *self.build_args(), timeout=self.timeout)
        if self._stdin is not None:
            cmd.set_stdin(self._stdin)
        if self._stderr is not None:
            cmd.set_stderr(self._stderr)
        if self._stdout is not None:
            cmd.set_stdout(self._stdout)
        cmd.run()

    def set_env(self, *args: str) -> "NodeCmd":
        self.env = list(args)
        return self

    def set_stdin(self, reader: IO[Any]) -> "NodeCmd":
        self._stdin = reader
        return self

    def set_stdout(self, writer: IO[Any]) -> "NodeCmd":
        self._stdout = writer
        return self

    def set_stderr(self, writer: IO[Any]) -> "NodeCmd":
        self._stderr = writer
        return self


_NODE_ROLE_LABEL_KEY = "io.x-k8s.kind.role"


class ContainerNode:
    """A cluster node backed by a container of the given engine."""

    def __init__(self, engine: str, name: str):
        self.engine = engine
        self.name = name

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"ContainerNode({self.engine!r}, {self.name!r})"

    def role(self) -> str:
        cmd = Cmd(
            self.engine,
            "inspect",
            "--format",
            f'{{{{ index .Config.Labels "{_NODE_ROLE_LABEL_KEY}"}}}}',
            self.name,
        )
        try:
            lines = output_lines(cmd)
        except RunError as exc:
            raise RuntimeError("failed to get role for node") from exc
        if len(lines) != 1:
            raise RuntimeError(f"failed to get role for node: output lines {len(lines)} != 1")
        return lines[0]

    def ip(self) -> tuple[str, str]:
        """Return the node's (IPv4, IPv6) addresses."""
        cmd = Cmd(
            self.engine,
            "inspect",
            "-f",
            "{{range .NetworkSettings.Networks}}{{.IPAddress}},{{.GlobalIPv6Address}}{{end}}",
            self.name,
        )
        try:
            lines = output_lines(cmd)
        except RunError as exc:
            raise RuntimeError("failed to get container details") from exc
        if len(lines) != 1:
            raise RuntimeError(f"file should only be one line, got {len(lines)} lines")
        ips = lines[0].split(",")
        if len(ips) != 2:
            raise RuntimeError(f"container addresses should have 2 values, got {len(ips)} values")
        return ips[0], ips[1]

    def command(self, command: str, *args: str, timeout: float | None = None) -> NodeCmd:
        return NodeCmd(self.engine, self.name, command, *args, timeout=timeout)

    def serial_logs(self, writer: IO[Any]) -> None:
        """Write the node container's logs to ``writer``."""
        Cmd(self.engine, "logs", self.name).set_stdout(writer).set_stderr(writer).run()