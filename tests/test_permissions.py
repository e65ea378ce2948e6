# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""DJ-role permission tiers."""

from types import SimpleNamespace

import pytest

from utils.permissions import PermissionManager


def member(*roles, admin=False):
    return SimpleNamespace(
        display_name="someone",
        roles=[SimpleNamespace(name=r) for r in roles],
        guild_permissions=SimpleNamespace(manage_guild=admin, administrator=False),
    )


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("DJ_ROLE_NAME", raising=False)
    monkeypatch.delenv("ENABLE_PERMISSIONS", raising=False)


async def test_disabled_by_default_allows_everything(tmp_path):
    manager = PermissionManager(tmp_path)
    await manager.load()

    assert (tmp_path / "permissions.yaml").exists()
    assert not manager.enabled
    assert manager.check_permission(member(), "skip")


async def test_dj_role_env_enables_checks(tmp_path, monkeypatch):
    monkeypatch.setenv("DJ_ROLE_NAME", "DJ")
    manager = PermissionManager(tmp_path)
    await manager.load()

    assert manager.enabled
    assert manager.check_permission(member(), "play")
    assert manager.check_permission(member(), "queue")
    assert not manager.check_permission(member(), "skip")
    assert manager.check_permission(member("DJ"), "skip")
    assert manager.check_permission(member(admin=True), "leave")


async def test_enabled_without_role_only_admins_control(tmp_path, monkeypatch):
    monkeypatch.setenv("ENABLE_PERMISSIONS", "true")
    manager = PermissionManager(tmp_path)
    await manager.load()

    assert not manager.check_permission(member("DJ"), "stop")
    assert manager.check_permission(member(admin=True), "stop")


async def test_dashboard_caller_is_trusted(tmp_path, monkeypatch):
    monkeypatch.setenv("DJ_ROLE_NAME", "DJ")
    manager = PermissionManager(tmp_path)
    await manager.load()

    assert manager.check_permission(None, "skip")


def test_unlisted_commands_default_to_listener(tmp_path):
    manager = PermissionManager(tmp_path)
    assert manager.get_tier("skip") == "dj"
    assert manager.get_tier("something_new") == "listener"
