"""
Unit tests for the role capability table.
"""

import pytest

from service_gateway.app.auth import Role
from service_gateway.app.security import Action, PermissionMatrix, ResourceType
from service_gateway.app.security import permissions


class TestPermissionMatrix:
    """Test cases for PermissionMatrix."""

    @pytest.fixture
    def matrix(self):
        """Matrix over the default table."""
        return PermissionMatrix()

    @pytest.mark.parametrize("role,resource,action", [
        (Role.ADMIN, ResourceType.USER, Action.DELETE),
        (Role.ADMIN, ResourceType.SHOP, Action.CREATE),
        (Role.ADMIN, ResourceType.POST, Action.UPDATE),
        (Role.SHOP_ADMIN, ResourceType.SHOP, Action.UPDATE),
        (Role.SHOP_ADMIN, ResourceType.POST, Action.DELETE),
        (Role.SHOP_ADMIN, ResourceType.RESERVATION, Action.READ),
        (Role.USER, ResourceType.USER, Action.READ),
        (Role.USER, ResourceType.MESSAGE, Action.CREATE),
        (Role.USER, ResourceType.RESERVATION, Action.CREATE),
        (Role.USER, ResourceType.REVIEW, Action.CREATE),
        (Role.ANONYMOUS, ResourceType.SHOP, Action.READ),
        (Role.ANONYMOUS, ResourceType.REVIEW, Action.READ),
    ])
    def test_granted(self, matrix, role, resource, action):
        """Test capabilities present in the table."""
        assert matrix.is_action_allowed(role, resource, action)

    @pytest.mark.parametrize("role,resource,action", [
        (Role.ANONYMOUS, ResourceType.USER, Action.READ),
        (Role.ANONYMOUS, ResourceType.POST, Action.CREATE),
        (Role.USER, ResourceType.SHOP, Action.UPDATE),
        (Role.USER, ResourceType.USER, Action.DELETE),
        (Role.SHOP_ADMIN, ResourceType.SHOP, Action.DELETE),
        (Role.SHOP_ADMIN, ResourceType.POST, Action.READ),
        (Role.ADMIN, ResourceType.MESSAGE, Action.READ),
        (Role.ADMIN, ResourceType.USER, Action.SHARE),
    ])
    def test_denied(self, matrix, role, resource, action):
        """Test that anything not listed is denied."""
        assert not matrix.is_action_allowed(role, resource, action)

    def test_unknown_role_has_no_capabilities(self, matrix):
        """Test that unrecognised roles get nothing."""
        assert matrix.capabilities("SUPERUSER") == frozenset()
        assert matrix.capabilities(None) == frozenset()
        assert not matrix.is_action_allowed("SUPERUSER", ResourceType.SHOP, Action.READ)

    def test_unknown_resource_or_action(self, matrix):
        """Test that unknown names are denied rather than raising."""
        assert not matrix.is_action_allowed(Role.ADMIN, "INVOICE", Action.READ)
        assert not matrix.is_action_allowed(Role.ADMIN, ResourceType.USER, "PURGE")

    def test_string_names_accepted(self, matrix):
        """Test lookups by role, resource and action name."""
        assert matrix.is_action_allowed("ROLE_ADMIN", "user", "delete")
        assert matrix.is_action_allowed("user", "POST", "CREATE")

    def test_resource_permissions(self, matrix):
        """Test the per-action summary for a resource."""
        summary = matrix.resource_permissions(Role.USER, ResourceType.POST)

        assert summary == {
            "READ": True,
            "CREATE": True,
            "UPDATE": False,
            "DELETE": False,
            "SHARE": False,
            "EXECUTE": False,
        }

    def test_table_is_read_only(self, matrix):
        """Test that the capability sets cannot be mutated."""
        with pytest.raises(AttributeError):
            matrix.capabilities(Role.USER).add((ResourceType.SHOP, Action.DELETE))


class TestPermissionHelpers:
    """Test cases for module level helpers."""

    def test_can_helpers(self):
        """Test the per-action shortcuts."""
        assert permissions.can_read(Role.ANONYMOUS, ResourceType.POST)
        assert permissions.can_create(Role.USER, ResourceType.REVIEW)
        assert permissions.can_update(Role.SHOP_ADMIN, ResourceType.RESERVATION)
        assert permissions.can_delete(Role.ADMIN, ResourceType.SHOP)
        assert not permissions.can_share(Role.ADMIN, ResourceType.POST)

    def test_any_and_all(self):
        """Test combined checks."""
        assert permissions.has_any_permission(Role.USER, ResourceType.USER, Action.DELETE, Action.UPDATE)
        assert not permissions.has_all_permissions(Role.USER, ResourceType.USER, Action.DELETE, Action.UPDATE)
        assert permissions.has_all_permissions(Role.ADMIN, ResourceType.SHOP, *permissions._CRUD)
