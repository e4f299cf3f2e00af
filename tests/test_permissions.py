"""Tests for role/permission resolution and the interest lifecycle."""

from tatami.core.interest_flow import can_transition
from tatami.core.permissions import (
    ROLE_PERMISSIONS,
    Permission,
    UserRole,
    parse_permissions,
    resolve_permissions,
)


class TestResolvePermissions:
    def test_user_has_nothing(self):
        assert resolve_permissions("USER") == frozenset()

    def test_admin_base_set(self):
        perms = resolve_permissions("ADMIN")
        assert Permission.PUBLISH_CONTENT in perms
        assert Permission.VIEW_ANALYTICS in perms
        assert Permission.DELETE_MASTERS not in perms
        assert Permission.MANAGE_ADMINS not in perms

    def test_super_admin_has_everything(self):
        assert resolve_permissions(UserRole.SUPER_ADMIN) == frozenset(Permission)

    def test_overrides_are_unioned(self):
        perms = resolve_permissions("ADMIN", ["DELETE_MASTERS", "VIEW_LOGS"])
        assert perms == ROLE_PERMISSIONS[UserRole.ADMIN] | {Permission.DELETE_MASTERS, Permission.VIEW_LOGS}

    def test_unknown_override_names_dropped(self):
        assert parse_permissions(["VIEW_LOGS", "FLY", ""]) == frozenset({Permission.VIEW_LOGS})

    def test_unknown_role_gets_only_overrides(self):
        assert resolve_permissions("GUEST", ["VIEW_USERS"]) == frozenset({Permission.VIEW_USERS})
        assert resolve_permissions(None) == frozenset()


class TestInterestTransitions:
    def test_forward_steps(self):
        assert can_transition("INTERESTED", "CONTACTED")
        assert can_transition("CONTACTED", "BOOKED")
        assert can_transition("BOOKED", "COMPLETED")

    def test_skipping_ahead_allowed(self):
        assert can_transition("INTERESTED", "COMPLETED")

    def test_backward_and_same_rejected(self):
        assert not can_transition("BOOKED", "CONTACTED")
        assert not can_transition("COMPLETED", "INTERESTED")
        assert not can_transition("CONTACTED", "CONTACTED")

    def test_unknown_status_rejected(self):
        assert not can_transition("INTERESTED", "CANCELLED")
        assert not can_transition("LOST", "BOOKED")
