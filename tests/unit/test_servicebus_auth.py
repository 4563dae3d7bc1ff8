"""
Unit Tests for Connection Strings and Shared Access Rules

Tests for connection string parsing and building, authorization rules,
and credential checks.

Author: LocalBus Team
Date: 2026-03-19
"""

import base64

import pytest

from localbus.auth import (
    AccessRights,
    AnonymousDevelopmentCredential,
    AuthorizationRule,
    AuthorizationRuleSet,
    ServiceBusSharedKeyCredential,
    build_connection_string,
    check_access,
    fully_qualified_namespace_for,
    generate_key,
    parse_connection_string,
)
from localbus.servicebus.exceptions import (
    InvalidOperationError,
    ServiceBusAuthenticationError,
    ServiceBusAuthorizationError,
)


EMULATOR_CONNECTION_STRING = (
    "Endpoint=sb://localhost;SharedAccessKeyName=RootManageSharedAccessKey;"
    "SharedAccessKey=SAS_KEY_VALUE;UseDevelopmentEmulator=true;"
)


@pytest.fixture
def rules():
    """Namespace rules with a send-only and a listen-only key."""
    rule_set = AuthorizationRuleSet()
    rule_set.add_rule(AuthorizationRule("sender", primary_key="send-key", rights={AccessRights.SEND}))
    rule_set.add_rule(AuthorizationRule("listener", primary_key="listen-key", rights={AccessRights.LISTEN}))
    return rule_set


class TestParseConnectionString:
    """Tests for connection string parsing."""

    def test_emulator_connection_string(self):
        """Test the local emulator connection string."""
        props = parse_connection_string(EMULATOR_CONNECTION_STRING)

        assert props.fully_qualified_namespace == "localhost"
        assert props.shared_access_key_name == "RootManageSharedAccessKey"
        assert props.shared_access_key == "SAS_KEY_VALUE"
        assert props.use_development_emulator is True
        assert props.entity_path is None
        assert props.endpoint == "sb://localhost/"

    def test_cloud_connection_string_with_entity_path(self):
        """Test a namespace host, base64 key and EntityPath."""
        props = parse_connection_string(
            "Endpoint=sb://orders.servicebus.windows.net/;SharedAccessKeyName=app;"
            "SharedAccessKey=abc+/def==;EntityPath=incoming"
        )

        assert props.fully_qualified_namespace == "orders.servicebus.windows.net"
        assert props.shared_access_key == "abc+/def=="
        assert props.entity_path == "incoming"
        assert props.use_development_emulator is False

    def test_keys_case_insensitive(self):
        """Test connection string keys are matched in any case."""
        props = parse_connection_string("endpoint=sb://localhost:5672;sharedaccesskeyname=a;sharedaccesskey=b")

        assert props.fully_qualified_namespace == "localhost:5672"
        assert props.shared_access_key_name == "a"

    def test_signature_connection_string(self):
        """Test a SharedAccessSignature connection string."""
        props = parse_connection_string("Endpoint=sb://localhost/;SharedAccessSignature=SharedAccessSignature sr=x")

        assert props.shared_access_signature == "SharedAccessSignature sr=x"
        assert props.shared_access_key is None

    @pytest.mark.parametrize("conn_str", [
        "",
        "SharedAccessKeyName=a;SharedAccessKey=b",
        "Endpoint=https://localhost/;SharedAccessKeyName=a;SharedAccessKey=b",
        "Endpoint=sb://localhost/;SharedAccessKeyName=a",
        "Endpoint=sb://localhost/;SharedAccessKeyName=a;SharedAccessKey=b;SharedAccessSignature=s",
        "Endpoint=sb://localhost/;garbage",
    ])
    def test_invalid_connection_strings(self, conn_str):
        """Test malformed connection strings raise ValueError."""
        with pytest.raises(ValueError):
            parse_connection_string(conn_str)

    def test_build_round_trip(self):
        """Test a built connection string parses back."""
        conn_str = build_connection_string("localhost", entity_path="orders")

        props = parse_connection_string(conn_str)
        assert props.entity_path == "orders"
        assert props.shared_access_key_name == "RootManageSharedAccessKey"
        assert props.use_development_emulator is True

    def test_fully_qualified_namespace_for(self):
        """Test short names get the Service Bus suffix."""
        assert fully_qualified_namespace_for("orders") == "orders.servicebus.windows.net"
        assert fully_qualified_namespace_for("localhost") == "localhost"
        assert fully_qualified_namespace_for("bus.example.test") == "bus.example.test"


class TestAuthorizationRule:
    """Tests for single authorization rules."""

    def test_manage_implies_send_and_listen(self):
        """Test Manage grants every claim."""
        rule = AuthorizationRule("admin", rights={AccessRights.MANAGE})

        assert rule.grants(AccessRights.SEND)
        assert rule.grants(AccessRights.LISTEN)

    def test_rights_from_strings(self):
        """Test rights given as strings are normalised."""
        rule = AuthorizationRule("app", rights={"Send", "Listen"})

        assert rule.to_dict() == {"key_name": "app", "rights": ["Listen", "Send"]}

    def test_primary_and_secondary_keys(self):
        """Test either key authenticates."""
        rule = AuthorizationRule("app", primary_key="one", secondary_key="two")

        assert rule.key_matches("one")
        assert rule.key_matches("two")
        assert not rule.key_matches("three")

    def test_generated_keys(self):
        """Test generated keys are 32 random bytes in base64."""
        key = generate_key()

        assert len(base64.b64decode(key)) == 32
        assert key != generate_key()


class TestAuthorizationRuleSet:
    """Tests for namespace rule sets."""

    def test_root_rule_present(self, rules):
        """Test the root manage rule uses the configured key."""
        rule = rules.authenticate("RootManageSharedAccessKey", "SAS_KEY_VALUE")

        assert rule.grants(AccessRights.MANAGE)

    def test_custom_root_key(self):
        """Test a namespace with its own root key."""
        rule_set = AuthorizationRuleSet(root_key="s3cret")

        with pytest.raises(ServiceBusAuthenticationError):
            rule_set.authenticate("RootManageSharedAccessKey", "SAS_KEY_VALUE")

    def test_wrong_key(self, rules):
        """Test a known name with the wrong key."""
        with pytest.raises(ServiceBusAuthenticationError):
            rules.authenticate("sender", "listen-key")

    def test_unknown_key_name(self, rules):
        """Test an unknown key name."""
        with pytest.raises(ServiceBusAuthenticationError):
            rules.authenticate("nobody", "x")

    def test_missing_claim(self, rules):
        """Test a valid key without the needed claim."""
        with pytest.raises(ServiceBusAuthorizationError) as exc_info:
            rules.authorize("sender", "send-key", AccessRights.LISTEN, "orders")

        assert exc_info.value.details["right"] == "Listen"

    def test_entity_rule_scoped(self, rules):
        """Test an entity-level rule applies to that entity only."""
        rules.add_rule(AuthorizationRule("orders-app", primary_key="k", rights={AccessRights.SEND}), "orders")

        rules.authorize("orders-app", "k", AccessRights.SEND, "orders")
        with pytest.raises(ServiceBusAuthenticationError):
            rules.authorize("orders-app", "k", AccessRights.SEND, "invoices")

    def test_remove_entity_rules(self, rules):
        """Test deleting an entity drops its rules."""
        rules.add_rule(AuthorizationRule("orders-app", primary_key="k"), "orders")

        rules.remove_entity("orders")

        assert rules.list_rules("orders") == []

    def test_remove_rule(self, rules):
        """Test removing a namespace rule."""
        rules.remove_rule("sender")

        assert rules.get_rule("sender") is None
        assert [r.key_name for r in rules.list_rules()] == ["RootManageSharedAccessKey", "listener"]

    def test_root_rule_cannot_be_removed(self, rules):
        """Test the root rule is permanent."""
        with pytest.raises(InvalidOperationError):
            rules.remove_rule("RootManageSharedAccessKey")


class TestCheckAccess:
    """Tests for credential checks."""

    def test_shared_key_credential_checked(self, rules):
        """Test shared key credentials are authorized."""
        check_access(rules, ServiceBusSharedKeyCredential("sender", "send-key"), AccessRights.SEND, "orders")

        with pytest.raises(ServiceBusAuthorizationError):
            check_access(rules, ServiceBusSharedKeyCredential("sender", "send-key"), AccessRights.MANAGE)

    def test_trusted_credentials(self, rules):
        """Test anonymous and missing credentials are trusted."""
        check_access(rules, AnonymousDevelopmentCredential(), AccessRights.MANAGE)
        check_access(rules, None, AccessRights.MANAGE)

    def test_credential_repr_hides_key(self):
        """Test the key is not shown in repr."""
        assert "send-key" not in repr(ServiceBusSharedKeyCredential("sender", "send-key"))
