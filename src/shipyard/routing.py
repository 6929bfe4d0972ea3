from .models import RouteRule

API_PREFIX = "/api"


def build_route_table(upstream_url: str) -> tuple[RouteRule, ...]:
    """
    The fixed routing table of the Edge Router.
    Rules are kept most-specific first; the catch-all must stay last or every
    request would resolve to static serving.
    """
    rules = (
        RouteRule(prefix=API_PREFIX, target="upstream", upstream=upstream_url),
        RouteRule(prefix="/", target="static"),
    )
    return tuple(sorted(rules, key=lambda r: len(r.prefix), reverse=True))


def resolve(table: tuple[RouteRule, ...], path: str) -> RouteRule:
    """Returns the first (longest) rule whose prefix matches the path."""
    for rule in table:
        if rule.matches(path):
            return rule
    raise LookupError(f"no route for {path!r}")
