"""
Shared fixtures: a Config rooted in tmp_path, a recording command runner and
helpers that keep every test off the real host.
"""

import os
from pathlib import Path

import pytest

import subdomain_deploy as sd

CLONE = ("git", "-c", "credential.helper=", "clone")


class FakeRunner:
    """Stands in for run_command; later rules take precedence."""

    def __init__(self):
        self.calls = []
        self.rules = []

    def on(self, *prefix, rc=0, out="", err="", action=None):
        self.rules.insert(0, (tuple(prefix), rc, out, err, action))

    def __call__(self, cmd, env=None, timeout=None):
        cmd = list(cmd)
        self.calls.append((cmd, env))
        for prefix, rc, out, err, action in self.rules:
            if tuple(cmd[: len(prefix)]) == prefix:
                if action is not None:
                    outcome = action(cmd, env)
                    if outcome is not None:
                        return outcome
                return rc, out, err
        return 0, "", ""

    def ran(self, *prefix):
        return any(tuple(cmd[: len(prefix)]) == prefix for cmd, _ in self.calls)

    def commands(self):
        return [cmd for cmd, _ in self.calls]


def fake_clone(files=None):
    """Action for a git clone rule that materialises a checkout."""
    files = files or {"index.html": "<h1>repo</h1>"}

    def action(cmd, env):
        destination = Path(cmd[-1])
        destination.mkdir(parents=True, exist_ok=True)
        (destination / ".git").mkdir(exist_ok=True)
        for name, content in files.items():
            (destination / name).write_text(content)
        return 0, "", ""

    return action


@pytest.fixture
def config(tmp_path):
    return sd.Config(
        LOG_FILE=tmp_path / "log" / "deploy.log",
        WEB_ROOT=tmp_path / "www",
        NGINX_SITES_AVAILABLE=tmp_path / "nginx" / "sites-available",
        NGINX_SITES_ENABLED=tmp_path / "nginx" / "sites-enabled",
        NGINX_LOG_DIR=tmp_path / "nginx-log",
        LETSENCRYPT_DIR=tmp_path / "letsencrypt",
        BACKUP_ROOT=tmp_path / "backups",
    )


@pytest.fixture
def runner(monkeypatch):
    fake = FakeRunner()
    monkeypatch.setattr(sd, "run_command", fake)
    return fake


@pytest.fixture
def installed(monkeypatch):
    """Mutable set of executables that command_exists reports as present."""
    present = {"apt-get", "git", "nginx", "curl"}
    monkeypatch.setattr(sd, "command_exists", lambda name: name in present)
    return present


@pytest.fixture(autouse=True)
def current_owner(monkeypatch):
    owner = sd.Owner("tester", os.getuid(), os.getgid())
    monkeypatch.setattr(sd, "resolve_owner", lambda config: owner)
    return owner


def make_request(**overrides):
    fields = {"subdomain": "app.example.com"}
    fields.update(overrides)
    return sd.DeploymentRequest(**fields)


def make_result(config, **overrides):
    request = overrides.pop("request", None) or make_request()
    return sd.DeploymentResult(
        request=request, artifacts=sd.site_artifacts(config, request.subdomain), **overrides
    )
