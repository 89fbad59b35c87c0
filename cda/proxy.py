from __future__ import annotations

import json
import os
import re
import shlex
import subprocess
from typing import Callable

from .errors import ConfigSyntaxError, ProxyReloadFailed
from .models import DeploymentRecord, ProxyConfig, ProxyRule
from .settings import settings


ROUTE_RE = re.compile(r"^/[A-Za-z0-9._~\-/]*$")
UPSTREAM_RE = re.compile(r"^(?P<host>[A-Za-z0-9][A-Za-z0-9_.\-]{0,252}):(?P<port>[0-9]{1,5})$")
HEADER_RE = re.compile(r"^# cda proxy config version (?P<version>[0-9]+)$")

Runner = Callable[[list[str], int], "subprocess.CompletedProcess[str]"]


def _run(cmd: list[str], timeout: int) -> "subprocess.CompletedProcess[str]":
    return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)


def _write_atomic(path: str, text: str) -> None:
    """Write next to the target, fsync, then rename over it."""
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def render_nginx(config: ProxyConfig, listen: int = 80) -> str:
    lines = [
        f"# cda proxy config version {config.version}",
        "# Generated file, changes are overwritten on the next deployment.",
        "server {",
        f"    listen {int(listen)};",
        "",
    ]
    for rule in config.rules:
        lines += [
            f"    location {rule.route_prefix} {{",
            f"        proxy_pass http://{rule.upstream_target};",
            "        proxy_set_header Host $host;",
            "        proxy_set_header X-Real-IP $remote_addr;",
            "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
            "        proxy_set_header X-Forwarded-Proto $scheme;",
            "    }",
            "",
        ]
    if not any(r.route_prefix == "/" for r in config.rules):
        lines += ["    location / {", "        return 503;", "    }", ""]
    lines.append("}")
    return "\n".join(lines) + "\n"


class ProxyConfigManager:
    """Versioned reverse-proxy routing config with validate-before-apply.

    Layout under `proxy_dir`:
      versions/NNNNNN.json   rules of each version (source of truth for rollback)
      versions/NNNNNN.conf   rendered nginx config of each version
      pointer.json           {"active": N, "previous": M}
      live file              what the proxy includes; its first line names its version
    """

    def __init__(
        self,
        proxy_dir: str | None = None,
        live_file: str | None = None,
        reload_cmd: str | None = None,
        test_cmd: str | None = None,
        retain: int | None = None,
        listen: int | None = None,
        runner: Runner | None = None,
    ) -> None:
        self.proxy_dir = os.path.abspath(proxy_dir or settings.proxy_dir)
        self.versions_dir = os.path.join(self.proxy_dir, "versions")
        self.live_file = os.path.abspath(live_file or settings.proxy_live_file or os.path.join(self.proxy_dir, "cda.conf"))
        self.pointer_file = os.path.join(self.proxy_dir, "pointer.json")
        self.reload_cmd = settings.proxy_reload_cmd if reload_cmd is None else reload_cmd
        self.test_cmd = settings.proxy_test_cmd if test_cmd is None else test_cmd
        self.retain = max(2, int(retain if retain is not None else settings.proxy_retain))
        self.listen = int(listen if listen is not None else settings.proxy_listen)
        self._run = runner or _run
        os.makedirs(self.versions_dir, exist_ok=True)
        os.makedirs(os.path.dirname(self.live_file), exist_ok=True)

    # -- reading ---------------------------------------------------------

    def _version_path(self, version: int, ext: str) -> str:
        return os.path.join(self.versions_dir, f"{int(version):06d}.{ext}")

    def _read_pointer(self) -> dict[str, int | None]:
        try:
            with open(self.pointer_file, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {"active": None, "previous": None}
        return {"active": data.get("active"), "previous": data.get("previous")}

    def stored_versions(self) -> list[int]:
        out = []
        for fn in os.listdir(self.versions_dir):
            stem, ext = os.path.splitext(fn)
            if ext == ".json" and stem.isdigit():
                out.append(int(stem))
        return sorted(out)

    def current_version(self) -> int | None:
        """Version the proxy is serving, read from the live file header."""
        try:
            with open(self.live_file, encoding="utf-8") as f:
                first = f.readline().strip()
        except FileNotFoundError:
            return None
        m = HEADER_RE.match(first)
        return int(m.group("version")) if m else None

    def load(self, version: int) -> ProxyConfig:
        try:
            with open(self._version_path(version, "json"), encoding="utf-8") as f:
                return ProxyConfig.from_dict(json.load(f))
        except FileNotFoundError as e:
            raise ConfigSyntaxError(f"proxy config version {version} is not retained") from e

    def active_config(self) -> ProxyConfig | None:
        v = self.current_version()
        return self.load(v) if v is not None else None

    # -- building --------------------------------------------------------

    def _next_version(self) -> int:
        known = self.stored_versions()
        current = self.current_version() or 0
        return max([current, *known]) + 1

    def render(self, record: DeploymentRecord) -> ProxyConfig:
        rules = [
            ProxyRule(route_prefix=s.proxy_route, upstream_target=f"{s.container_name}:{int(s.container_port)}")
            for s in record.services.values()
            if s.status == "running"
        ]
        # Longest prefix first, then alphabetical, so output is stable.
        rules.sort(key=lambda r: (-len(r.route_prefix), r.route_prefix))
        return ProxyConfig(version=self._next_version(), rules=tuple(rules))

    def empty(self) -> ProxyConfig:
        return ProxyConfig(version=self._next_version(), rules=())

    def validate(self, config: ProxyConfig) -> None:
        seen: set[str] = set()
        for rule in config.rules:
            if not ROUTE_RE.match(rule.route_prefix):
                raise ConfigSyntaxError(f"invalid route prefix '{rule.route_prefix}'")
            if rule.route_prefix in seen:
                raise ConfigSyntaxError(f"duplicate route prefix '{rule.route_prefix}'")
            seen.add(rule.route_prefix)
            m = UPSTREAM_RE.match(rule.upstream_target)
            if not m or not 1 <= int(m.group("port")) <= 65535:
                raise ConfigSyntaxError(f"invalid upstream '{rule.upstream_target}'")

        if not self.test_cmd:
            return
        candidate = self._version_path(config.version, "candidate.conf")
        with open(candidate, "w", encoding="utf-8") as f:
            f.write(render_nginx(config, self.listen))
        try:
            cmd = [part.replace("{path}", candidate) for part in shlex.split(self.test_cmd)]
            try:
                res = self._run(cmd, settings.proxy_cmd_timeout_s)
            except (OSError, subprocess.TimeoutExpired) as e:
                raise ConfigSyntaxError(f"proxy config test could not run: {e}") from e
            if res.returncode != 0:
                raise ConfigSyntaxError(f"proxy rejected config: {(res.stderr or res.stdout).strip()}")
        finally:
            if os.path.exists(candidate):
                os.remove(candidate)

    # -- swapping --------------------------------------------------------

    def _reload(self) -> None:
        if not self.reload_cmd:
            return
        try:
            res = self._run(shlex.split(self.reload_cmd), settings.proxy_cmd_timeout_s)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ProxyReloadFailed(f"proxy reload could not run: {e}") from e
        if res.returncode != 0:
            raise ProxyReloadFailed(f"proxy reload failed (rc={res.returncode}): {(res.stderr or '').strip()}")

    def _swap_live(self, text: str | None) -> None:
        if text is None:
            if os.path.exists(self.live_file):
                os.remove(self.live_file)
            return
        _write_atomic(self.live_file, text)

    def _read_live(self) -> str | None:
        try:
            with open(self.live_file, encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def _activate(self, config: ProxyConfig) -> None:
        """Swap the live file to `config` and reload; restore on failure."""
        before_text = self._read_live()
        before_version = self.current_version()
        self._swap_live(render_nginx(config, self.listen))
        try:
            self._reload()
        except ProxyReloadFailed:
            self._swap_live(before_text)
            if before_text is not None:
                self._reload()
            raise
        _write_atomic(
            self.pointer_file,
            json.dumps({"active": config.version, "previous": before_version}),
        )

    def apply(self, config: ProxyConfig) -> int:
        self.validate(config)
        _write_atomic(self._version_path(config.version, "json"), json.dumps(config.to_dict(), sort_keys=True))
        _write_atomic(self._version_path(config.version, "conf"), render_nginx(config, self.listen))
        self._activate(config)
        self._prune()
        return config.version

    def rollback(self, to_version: int | None = None) -> None:
        """Restore a retained version, by default the one before the active one."""
        if to_version is None:
            to_version = self._read_pointer()["previous"]
        if to_version is None:
            raise ConfigSyntaxError("no previous proxy config version to roll back to")
        if self.current_version() == to_version:
            return
        self._activate(self.load(to_version))

    def _prune(self) -> None:
        keep = set(self.stored_versions()[-self.retain:])
        pointer = self._read_pointer()
        keep.update(v for v in (pointer["active"], pointer["previous"]) if v is not None)
        for v in self.stored_versions():
            if v in keep:
                continue
            for ext in ("json", "conf"):
                p = self._version_path(v, ext)
                if os.path.exists(p):
                    os.remove(p)
