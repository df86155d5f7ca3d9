"""Tests for the first-admin bootstrap script."""

import importlib.util
from pathlib import Path

import pytest

from coopadmin.service.errors import BadRequestError

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


class TestBootstrapAdmin:
    @pytest.mark.asyncio
    async def test_creates_admin(self, bootstrap):
        result = await bootstrap("  First@Coop.Example ", "Boot#Pass1")
        assert result["status"] == "created"
        assert result["email"] == "first@coop.example"
        assert result["admin_id"]

    @pytest.mark.asyncio
    async def test_dry_run_makes_no_changes(self, bootstrap, capsys):
        result = await bootstrap("dry@coop.example", "Boot#Pass1", dry_run=True)
        assert result == {"admin_id": None, "email": "dry@coop.example", "status": "dry_run"}
        assert "[DRY RUN] Would create admin dry@coop.example" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_invalid_email_rejected(self, bootstrap):
        with pytest.raises(ValueError):
            await bootstrap("not-an-email", "Boot#Pass1")

    @pytest.mark.asyncio
    async def test_weak_password_rejected(self, bootstrap):
        with pytest.raises(BadRequestError):
            await bootstrap("weak@coop.example", "a b")
