"""Tests for roles and permissions."""

from unittest.mock import patch

import pytest

from tenant_gate.auth.roles import (
    Permission,
    PermissionSet,
    Role,
    default_permissions,
    effective_permissions,
)


class TestRoleOrdering:
    def test_total_order(self) -> None:
        assert Role.VIEWER < Role.EDITOR < Role.ADMIN < Role.OWNER

    def test_uses_rank_not_string_value(self) -> None:
        # "owner" < "viewer" alphabetically
        assert Role.OWNER > Role.VIEWER
        assert max(Role) is Role.OWNER

    @pytest.mark.parametrize(
        ("role", "minimum", "expected"),
        [
            (Role.ADMIN, Role.EDITOR, True),
            (Role.EDITOR, Role.EDITOR, True),
            (Role.VIEWER, Role.EDITOR, False),
            (Role.OWNER, Role.ADMIN, True),
        ],
    )
    def test_at_least(self, role: Role, minimum: Role, expected: bool) -> None:
        assert role.at_least(minimum) is expected


class TestPermissionSet:
    def test_from_mapping_true_only(self) -> None:
        perms = PermissionSet.from_mapping(
            {"manage_users": True, "manage_billing": False, "manage_projects": 1}
        )
        assert perms == {Permission.MANAGE_USERS}

    def test_unknown_flags_dropped(self) -> None:
        with patch("tenant_gate.auth.roles.logger") as mock_logger:
            perms = PermissionSet.from_mapping({"launch_rockets": True})
        assert perms == frozenset()
        mock_logger.warning.assert_called_once_with(
            "unknown_permission_flag", flag="launch_rockets"
        )

    def test_none_is_empty(self) -> None:
        assert PermissionSet.from_mapping(None) == frozenset()

    def test_to_mapping_lists_every_flag(self) -> None:
        mapping = PermissionSet({Permission.MANAGE_USERS}).to_mapping()
        assert set(mapping) == {p.value for p in Permission}
        assert mapping["manage_users"] is True
        assert mapping["delete_tenant"] is False


class TestDefaults:
    def test_owner_gets_everything(self) -> None:
        assert default_permissions(Role.OWNER) == frozenset(Permission)

    def test_admin_floor(self) -> None:
        assert default_permissions(Role.ADMIN) == {
            Permission.MANAGE_USERS,
            Permission.MANAGE_PROJECTS,
        }

    @pytest.mark.parametrize("role", [Role.EDITOR, Role.VIEWER])
    def test_lower_roles_get_nothing(self, role: Role) -> None:
        assert default_permissions(role) == frozenset()


class TestEffectivePermissions:
    def test_owner_ignores_stale_map(self) -> None:
        assert effective_permissions(Role.OWNER, {}) == frozenset(Permission)

    def test_non_owner_uses_stored_map(self) -> None:
        perms = effective_permissions(Role.EDITOR, {"manage_projects": True})
        assert perms == {Permission.MANAGE_PROJECTS}

    def test_admin_without_stored_flags_has_none(self) -> None:
        assert effective_permissions(Role.ADMIN, None) == frozenset()

    def test_accepts_iterable(self) -> None:
        perms = effective_permissions(Role.VIEWER, [Permission.MANAGE_SETTINGS])
        assert perms == {Permission.MANAGE_SETTINGS}
