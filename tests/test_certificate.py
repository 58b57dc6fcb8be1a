"""
Tests for certbot installation, prerequisite checks and certificate requests.
"""

import pytest
import requests

import subdomain_deploy as sd
from conftest import make_request, make_result

HTTPS = dict(enable_https=True, email="ops@example.com")


@pytest.fixture
def dns(monkeypatch):
    """Subdomain resolves to the server's public IP."""
    addresses = ["203.0.113.10"]
    monkeypatch.setattr(sd, "resolve_addresses", lambda host: list(addresses))
    monkeypatch.setattr(sd, "get_public_ip", lambda config: "203.0.113.10")
    return addresses


class TestCertbotCommand:
    """certbot arguments."""

    def test_with_email(self):
        assert sd.certbot_command("app.example.com", "ops@example.com") == [
            "certbot", "--nginx", "-d", "app.example.com",
            "--email", "ops@example.com",
            "--agree-tos", "--non-interactive", "--redirect",
        ]

    def test_without_email(self):
        cmd = sd.certbot_command("app.example.com", None)
        assert "--register-unsafely-without-email" in cmd
        assert "--email" not in cmd


class TestInstallCertbot:
    """Installation channels."""

    def test_already_installed(self, runner, installed):
        installed.add("certbot")
        assert sd.install_certbot()
        assert runner.calls == []

    def test_package_channel(self, runner, installed):
        runner.on("apt-get", "install", action=lambda cmd, env: installed.add("certbot"))
        assert sd.install_certbot()
        assert runner.ran("apt-get", "install", "-y", "certbot", "python3-certbot-nginx")
        assert not runner.ran("snap")

    def test_snap_fallback(self, runner, installed):
        runner.on("apt-get", "install", "-y", "certbot", rc=100)
        runner.on("ln", "-sf", action=lambda cmd, env: installed.add("certbot"))
        assert sd.install_certbot()
        assert runner.ran("apt-get", "install", "-y", "snapd")
        assert runner.ran("systemctl", "enable", "--now", "snapd.socket")
        assert runner.ran("snap", "install", "--classic", "certbot")

    def test_snap_present_skips_snapd(self, runner, installed):
        installed.add("snap")
        runner.on("apt-get", "install", "-y", "certbot", rc=100)
        runner.on("ln", "-sf", action=lambda cmd, env: installed.add("certbot"))
        assert sd.install_certbot()
        assert not runner.ran("apt-get", "install", "-y", "snapd")

    def test_everything_fails(self, runner, installed):
        runner.on("apt-get", "install", rc=100)
        runner.on("snap", rc=1, err="cannot communicate with server")
        assert not sd.install_certbot()


class TestPrerequisites:
    """Blocking and advisory checks."""

    def test_all_clear(self, config, runner, dns):
        assert sd.check_certificate_prerequisites(config, "app.example.com") == ([], [])

    def test_unresolved_name_blocks(self, config, runner, dns):
        dns.clear()
        blockers, _ = sd.check_certificate_prerequisites(config, "app.example.com")
        assert any("does not resolve" in b for b in blockers)

    def test_ip_mismatch_is_advisory(self, config, runner, dns):
        dns[:] = ["198.51.100.7"]
        blockers, advisories = sd.check_certificate_prerequisites(config, "app.example.com")
        assert blockers == []
        assert any("198.51.100.7" in a for a in advisories)

    def test_port_443_held_by_other_process(self, config, runner, dns):
        runner.on("ss", out='LISTEN 0 511 0.0.0.0:443 0.0.0.0:* users:(("haproxy",pid=9,fd=6))')
        _, advisories = sd.check_certificate_prerequisites(config, "app.example.com")
        assert any("haproxy" in a for a in advisories)

    def test_nginx_down_blocks(self, config, runner, dns):
        runner.on("systemctl", "is-active", rc=3)
        blockers, _ = sd.check_certificate_prerequisites(config, "app.example.com")
        assert "nginx is not running" in blockers

    def test_public_ip_lookup(self, config, monkeypatch):
        class Response:
            text = "203.0.113.10\n"

            def raise_for_status(self):
                pass

        monkeypatch.setattr(sd.requests, "get", lambda url, timeout: Response())
        assert sd.get_public_ip(config) == "203.0.113.10"

    def test_public_ip_lookup_failure(self, config, monkeypatch):
        def fail(url, timeout):
            raise requests.ConnectionError("offline")

        monkeypatch.setattr(sd.requests, "get", fail)
        assert sd.get_public_ip(config) is None


class TestSetupCertificate:
    """The certificate step never aborts the run."""

    def test_skipped_without_https(self, config, runner):
        result = make_result(config)
        assert sd.setup_certificate(config, result) is result
        assert runner.calls == []

    def test_success(self, config, runner, installed, dns):
        installed.add("certbot")
        result = sd.setup_certificate(config, make_result(config, request=make_request(**HTTPS)))
        assert result.certificate_ok is True
        assert runner.ran("certbot", "--nginx", "-d", "app.example.com", "--email", "ops@example.com")

    def test_certbot_failure_is_a_warning(self, config, runner, installed, dns):
        installed.add("certbot")
        runner.on("certbot", rc=1, err="DNS problem: NXDOMAIN")
        result = sd.setup_certificate(config, make_result(config, request=make_request(**HTTPS)))
        assert result.certificate_ok is False

    def test_blockers_skip_the_request(self, config, runner, installed, dns):
        installed.add("certbot")
        dns.clear()
        result = sd.setup_certificate(config, make_result(config, request=make_request(**HTTPS)))
        assert result.certificate_ok is False
        assert not runner.ran("certbot")

    def test_install_failure_is_a_warning(self, config, runner, installed, dns):
        runner.on("apt-get", "install", rc=100)
        runner.on("snap", rc=1)
        result = sd.setup_certificate(config, make_result(config, request=make_request(**HTTPS)))
        assert result.certificate_ok is False

    def test_existing_certificate_backed_up(self, config, runner, installed, dns):
        installed.add("certbot")
        live = config.LETSENCRYPT_DIR / "live" / "app.example.com"
        archive = config.LETSENCRYPT_DIR / "archive" / "app.example.com"
        live.mkdir(parents=True)
        archive.mkdir(parents=True)
        (archive / "fullchain1.pem").write_text("pem")
        (live / "fullchain.pem").symlink_to(archive / "fullchain1.pem")

        request = make_request(backup_certificate=True, **HTTPS)
        result = sd.setup_certificate(config, make_result(config, request=request))

        assert len(result.backups) == 1
        backup = result.backups[0]
        assert backup.name.startswith("certificate-")
        assert (backup / "live" / "fullchain.pem").is_symlink()
        assert (backup / "archive" / "fullchain1.pem").read_text() == "pem"
