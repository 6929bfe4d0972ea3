import pytest

from shipyard.models import RouteRule
from shipyard.routing import build_route_table, resolve


@pytest.fixture
def table():
    return build_route_table("http://backend:3000")


def test_api_rule_is_evaluated_before_catch_all(table):
    assert [rule.prefix for rule in table] == ["/api", "/"]


@pytest.mark.parametrize("path", ["/api", "/api/", "/api/health", "/api/users/7", "/apiary"])
def test_api_paths_go_upstream(table, path):
    rule = resolve(table, path)
    assert rule.target == "upstream"
    assert rule.upstream == "http://backend:3000"


@pytest.mark.parametrize("path", ["/", "/index.html", "/dashboard", "/static/js/main.js", "/ap"])
def test_other_paths_are_static(table, path):
    assert resolve(table, path).target == "static"


def test_upstream_rule_needs_an_address():
    with pytest.raises(ValueError):
        RouteRule(prefix="/api", target="upstream")


def test_resolve_without_match():
    with pytest.raises(LookupError):
        resolve((RouteRule(prefix="/api", target="upstream", upstream="http://x"),), "/")
