"""Tests for resource parsing, validation and hostname grammars."""

import pytest

from service_router.models import (
    ClusterIdentity,
    DNSConfiguration,
    GatewaySpec,
    ServiceRouteSpec,
    controller_owner,
    creation_order,
    load_balancer_ip,
    source_host,
    target_host,
)

from helpers import make_cluster_identity, make_gateway, make_lb_service, make_service_route


def test_hostnames() -> None:
    identity = ClusterIdentity.from_resource(make_cluster_identity())
    route = ServiceRouteSpec.from_resource(make_service_route())

    assert source_host(route, identity) == "auth-ns-d-dev-nid-02.example.com"
    assert target_host(identity, "external") == "aks01-neu-external.example.com"


def test_identity_parsing_trims_and_drops_empty_regions() -> None:
    identity = ClusterIdentity.from_resource(make_cluster_identity(adopts_regions=[" frc ", "", None]))
    assert identity.adopts_regions == ("frc",)


@pytest.mark.parametrize(
    "field, message",
    [
        ("region", "region cannot be empty"),
        ("cluster", "cluster cannot be empty"),
        ("domain", "domain cannot be empty"),
        ("environment_letter", "environmentLetter cannot be empty"),
    ],
)
def test_identity_validation(field, message) -> None:
    assert ClusterIdentity.from_resource(make_cluster_identity(**{field: ""})).validate() == message


def test_dns_configuration_helpers() -> None:
    config = DNSConfiguration.from_resource(
        {"spec": {"externalDNSControllers": [{"name": "a", "region": "neu"}, "junk", {"name": "d", "region": "weu"}]}}
    )

    assert config.validate() is None
    assert config.regions() == {"neu", "weu"}
    assert config.names_for_region("neu") == ["a"]
    assert set(config.by_name()) == {"a", "d"}


@pytest.mark.parametrize(
    "postfix, valid",
    [("external", True), ("int-01", True), ("Bad", False), ("-lead", False), ("trail-", False), ("a_b", False)],
)
def test_target_postfix_grammar(postfix, valid) -> None:
    error = GatewaySpec.from_resource(make_gateway(target_postfix=postfix)).validate()
    assert (error is None) is valid


def test_gateway_requires_credential() -> None:
    assert GatewaySpec.from_resource(make_gateway(credential_name="")).validate() == (
        "credentialName must be specified"
    )


def test_route_validation_and_namespace_resolution() -> None:
    assert ServiceRouteSpec.from_resource(make_service_route(application="")).validate() == (
        "application must be specified"
    )
    spec = ServiceRouteSpec.from_resource(make_service_route(gateway_namespace="team-gw"))
    assert spec.resolved_gateway_namespace("istio-system") == "team-gw"


def test_creation_order_breaks_ties_by_name() -> None:
    items = [
        make_cluster_identity(name="b", created="2024-01-01T00:00:00Z"),
        make_cluster_identity(name="a", created="2024-01-01T00:00:00Z"),
        make_cluster_identity(name="0", created="2024-06-01T00:00:00Z"),
    ]
    assert min(items, key=creation_order)["metadata"]["name"] == "a"


def test_load_balancer_ip() -> None:
    assert load_balancer_ip(make_lb_service(ip="10.0.0.1")) == "10.0.0.1"
    assert load_balancer_ip(make_lb_service(ip="")) == ""
    assert load_balancer_ip(None) == ""


def test_controller_owner() -> None:
    obj = {"metadata": {"ownerReferences": [{"name": "x"}, {"name": "y", "controller": True}]}}
    assert controller_owner(obj)["name"] == "y"
    assert controller_owner({"metadata": {}}) is None
