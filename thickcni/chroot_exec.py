"""Run CNI plugins, optionally inside a chroot of the host filesystem."""

from __future__ import annotations

import errno
import io
import json
import os
import signal
import stat
import subprocess
import time
from dataclasses import dataclass
from typing import IO, Any, Iterable, Mapping, Sequence

_RETRIES = 6


class PluginError(Exception):
    """A CNI plugin failed; carries the CNI error fields."""

    def __init__(self, msg: str, code: int = 0, details: str = "", cni_version: str = "") -> None:
        self.msg = msg
        self.code = code
        self.details = details
        self.cni_version = cni_version
        super().__init__(str(self))

    def __str__(self) -> str:
        return self.msg if not self.details else f"{self.msg}; {self.details}"


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _environment(environ: Mapping[str, str] | Iterable[str] | None) -> dict[str, str] | None:
    if environ is None:
        return None
    if isinstance(environ, Mapping):
        return dict(environ)
    env = {}
    for item in environ:
        key, sep, value = item.partition("=")
        if sep:
            env[key] = value
    return env


def _exit_description(returncode: int) -> str:
    if returncode < 0:
        try:
            return f"signal: {signal.Signals(-returncode).name}"
        except ValueError:
            return f"signal: {-returncode}"
    return f"exit status {returncode}"


def _plugin_error(cause: str, stdout: bytes, stderr: bytes) -> PluginError:
    if not stdout:
        if not stderr:
            return PluginError(f"netplugin failed with no error message: {cause}")
        return PluginError(f"netplugin failed: {_quote(stderr.decode('utf-8', 'replace'))}")
    text = stdout.decode("utf-8", "replace")
    try:
        data = json.loads(stdout)
        if not isinstance(data, dict):
            raise ValueError(f"not an object: {data!r}")
        code = data.get("code") or 0
        msg = data.get("msg") or ""
        details = data.get("details") or ""
        version = data.get("cniVersion") or ""
        if not isinstance(code, int) or isinstance(code, bool) or code < 0:
            raise ValueError(f"wrong code format: {code!r}")
        if not all(isinstance(v, str) for v in (msg, details, version)):
            raise ValueError("wrong error message format")
    except (ValueError, UnicodeDecodeError) as exc:
        return PluginError(f"netplugin failed but error parsing its diagnostic message {_quote(text)}: {exc}")
    return PluginError(msg, code=code, details=details, cni_version=version)


@dataclass
class ChrootExec:
    """Executes CNI plugins with the filesystem root set to ``chroot_dir``."""

    stderr: IO[Any] | None = None
    chroot_dir: str = ""

    def _enter_chroot(self) -> None:
        os.chroot(self.chroot_dir)
        os.chdir("/")

    def exec_plugin(
        self,
        plugin_path: str,
        stdin_data: bytes | None,
        environ: Mapping[str, str] | Sequence[str] | None,
    ) -> bytes:
        """Run the plugin with the given stdin and environment and return its stdout."""
        env = _environment(environ)
        preexec = self._enter_chroot if self.chroot_dir else None
        for _ in range(_RETRIES):
            try:
                completed = subprocess.run(
                    [plugin_path],
                    input=stdin_data or b"",
                    capture_output=True,
                    env=env,
                    preexec_fn=preexec,
                    check=False,
                )
            except OSError as exc:
                if exc.errno == errno.ETXTBSY:
                    # The plugin binary is being written; wait and try again.
                    time.sleep(1)
                    continue
                raise _plugin_error(str(exc), b"", b"") from exc
            except subprocess.SubprocessError as exc:
                raise _plugin_error(str(exc), b"", b"") from exc
            if completed.returncode != 0:
                raise _plugin_error(_exit_description(completed.returncode), completed.stdout, completed.stderr)
            self._forward_stderr(completed.stderr)
            return completed.stdout
        raise PluginError(f"netplugin failed with no error message: {plugin_path}: text file busy")

    def _forward_stderr(self, data: bytes) -> None:
        if self.stderr is None or not data:
            return
        try:
            if isinstance(self.stderr, io.TextIOBase):
                self.stderr.write(data.decode("utf-8", "replace"))
            else:
                self.stderr.write(data)
        except (OSError, ValueError, TypeError):
            pass

    def find_in_path(self, plugin: str, paths: Sequence[str]) -> str:
        """Return the full path of ``plugin`` in the first of ``paths`` that has it."""
        if not plugin:
            raise ValueError("no plugin name provided")
        if os.sep in plugin or (os.altsep and os.altsep in plugin):
            raise ValueError(f"invalid plugin name: {plugin}")
        if not paths:
            raise ValueError("no paths provided")
        for directory in paths:
            candidate = os.path.join(directory, plugin)
            try:
                if stat.S_ISREG(os.stat(candidate).st_mode):
                    return candidate
            except OSError:
                continue
        raise FileNotFoundError(f"failed to find plugin {_quote(plugin)} in path [{' '.join(paths)}]")