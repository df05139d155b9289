"""
Topology discovery: walk the portal's organization tree and classify leaves.

The organization tree endpoint returns nested ``childList`` arrays
(site -> organisational nodes -> SmartLogger gateways -> devices). The
walk is iterative with an explicit stack and a visited guard, so a deep
or cyclic reply can neither blow the stack nor loop forever. Malformed
fragments (non-dict nodes, a ``childList`` that is neither a list nor a
JSON-encoded list) are skipped and the rest of the tree is kept.

Classification is an explicit, ordered rule table: the inverter type
code wins over any name heuristic, then the first matching name rule in
declared order decides. Names matching no rule are tagged
``UNCLASSIFIED`` and kept in the topology so the orchestrator can report
them.

CHANGELOG:
- 2026-03-07: Keep unclassified devices in the snapshot instead of dropping them
- 2026-03-04: Attach model/serial from the gateway children-list
- 2026-03-03: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from typing import Any

from pydantic import ValidationError

from harvester.src.errors import DiscoveryFailedError, HarvesterError
from harvester.src.models import (
    ChildDevice,
    ClassifiedDevice,
    DeviceCategory,
    DeviceNode,
    SiteConfig,
    SiteTopology,
)
from harvester.src.signals import INVERTER_TYPE_ID, PARAM_MODEL, PARAM_SERIAL

logger = logging.getLogger(__name__)

GATEWAY_NAME_MARKERS: tuple[str, ...] = ("smartlogger", "logger")

CLASSIFICATION_RULES: tuple[tuple[str, DeviceCategory], ...] = (
    ("inverter", DeviceCategory.INVERTER),
    ("meter", DeviceCategory.METER),
    ("emic", DeviceCategory.SENSOR),
    ("sensor", DeviceCategory.SENSOR),
    ("weather", DeviceCategory.SENSOR),
    ("emi", DeviceCategory.SENSOR),
)
"""Name substring rules, evaluated in order after the type-code rule."""


# ---------------------------------------------------------------------------
# Tree walk
# ---------------------------------------------------------------------------


def _child_list(node: dict[str, Any]) -> list[Any]:
    """Return a node's children, decoding a JSON-string ``childList``."""
    children = node.get("childList")
    if children is None:
        return []
    if isinstance(children, str):
        try:
            children = json.loads(children)
        except json.JSONDecodeError:
            logger.debug("Skipping unparsable childList under %r", node.get("elementDn"))
            return []
    if not isinstance(children, list):
        logger.debug("Skipping non-list childList under %r", node.get("elementDn"))
        return []
    return children


def walk_tree(tree: Any) -> Iterator[DeviceNode]:
    """Yield every well-formed node of *tree* in depth-first pre-order.

    *tree* may be the endpoint's top-level object (with a ``childList``),
    a single node, or a bare list of nodes. Each yielded node carries the
    DN of its enclosing node in ``parent_dn``.
    """
    if isinstance(tree, dict):
        roots = _child_list(tree) if "elementDn" not in tree else [tree]
    elif isinstance(tree, list):
        roots = tree
    else:
        return

    stack: list[tuple[Any, str]] = [(node, "") for node in reversed(roots)]
    visited: set[int] = set()
    while stack:
        raw, parent_dn = stack.pop()
        if not isinstance(raw, dict) or id(raw) in visited:
            continue
        visited.add(id(raw))
        children = _child_list(raw)
        try:
            node = DeviceNode.model_validate({**raw, "parentDn": parent_dn})
        except ValidationError:
            logger.debug("Skipping malformed tree node %r", raw.get("elementDn"))
            dn = raw.get("elementDn")
            stack.extend((child, dn if isinstance(dn, str) else "") for child in reversed(children))
            continue
        yield node
        stack.extend((child, node.element_dn) for child in reversed(children))


def find_subtree(tree: Any, dn: str) -> dict[str, Any] | None:
    """Return the raw node of *tree* whose ``elementDn`` is *dn*, if any."""
    stack: list[Any] = [tree]
    visited: set[int] = set()
    while stack:
        raw = stack.pop()
        if id(raw) in visited:
            continue
        visited.add(id(raw))
        if isinstance(raw, list):
            stack.extend(reversed(raw))
        elif isinstance(raw, dict):
            if raw.get("elementDn") == dn:
                return raw
            stack.extend(reversed(_child_list(raw)))
    return None


def is_gateway(node: DeviceNode) -> bool:
    """Return True if the node's display name marks it as a SmartLogger."""
    name = node.node_name.lower()
    return any(marker in name for marker in GATEWAY_NAME_MARKERS)


def discover_gateways(tree: Any) -> list[DeviceNode]:
    """Return each gateway-named node of *tree* exactly once, at any depth."""
    gateways: list[DeviceNode] = []
    seen: set[str] = set()
    for node in walk_tree(tree):
        if not is_gateway(node):
            continue
        key = node.element_dn or f"name:{node.node_name}"
        if key in seen:
            continue
        seen.add(key)
        gateways.append(node)
    return gateways


def discover_devices(tree: Any) -> list[DeviceNode]:
    """Return every leaf node of *tree* that carries a DN."""
    devices: list[DeviceNode] = []
    seen: set[str] = set()
    for node in walk_tree(tree):
        if node.is_parent or not node.element_dn or node.element_dn in seen:
            continue
        seen.add(node.element_dn)
        devices.append(node)
    return devices


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify(node: DeviceNode) -> DeviceCategory:
    """Assign exactly one category to a device node.

    Rule order: the inverter type code first, then the name substrings of
    :data:`CLASSIFICATION_RULES` in declared order. A name matching rules
    of more than one category keeps the first match and is logged.
    """
    if node.type_id == INVERTER_TYPE_ID:
        return DeviceCategory.INVERTER

    name = node.node_name.lower()
    matches = [category for marker, category in CLASSIFICATION_RULES if marker in name]
    if not matches:
        return DeviceCategory.UNCLASSIFIED

    distinct = list(dict.fromkeys(matches))
    if len(distinct) > 1:
        logger.info(
            "Device %r matches several categories %s; using %s",
            node.node_name,
            [c.value for c in distinct],
            distinct[0].value,
        )
    return distinct[0]


def _match_child(node: DeviceNode, children: list[ChildDevice]) -> ChildDevice | None:
    for child in children:
        if child.dn and child.dn == node.element_dn:
            return child
    for child in children:
        if child.name and child.name == node.node_name:
            return child
    return None


def classify_devices(
    nodes: list[DeviceNode],
    site: SiteConfig,
    gateway: DeviceNode,
    children: list[ChildDevice] | None = None,
) -> list[ClassifiedDevice]:
    """Tag each leaf under *gateway* with its category and static info."""
    children = children or []
    classified: list[ClassifiedDevice] = []
    for node in nodes:
        child = _match_child(node, children)
        classified.append(
            ClassifiedDevice(
                node=node,
                category=classify(node),
                site=site,
                gateway_dn=gateway.element_dn,
                gateway_name=gateway.node_name,
                model=child.param(PARAM_MODEL) if child else "",
                serial=child.param(PARAM_SERIAL) if child else "",
            )
        )
    return classified


# ---------------------------------------------------------------------------
# Site topology
# ---------------------------------------------------------------------------


async def discover_topology(
    client: Any,
    site: SiteConfig,
    fallback_tree: dict[str, Any] | None = None,
) -> SiteTopology:
    """Build the topology snapshot of one site.

    Fetches the site's tree to find gateways, then each gateway's subtree
    and children-list. A failure on one gateway only loses that gateway.

    Args:
        client: A :class:`~harvester.src.transport.PortalClient` (or any
            object with ``fetch_org_tree`` / ``fetch_children``).
        site: Site to discover.
        fallback_tree: Tree recovered from the browser's own traffic, used
            when the site tree request fails and it contains the site.

    Raises:
        DiscoveryFailedError: If the site tree could not be obtained.
    """
    try:
        site_tree: Any = await client.fetch_org_tree(site.id)
    except HarvesterError as exc:
        recovered = find_subtree(fallback_tree, site.id) if fallback_tree else None
        if recovered is None:
            raise DiscoveryFailedError(site.id, str(exc)) from exc
        logger.warning("Site tree request for %s failed (%s); using recovered tree", site.id, exc)
        site_tree = recovered

    topology = SiteTopology(site=site, gateways=discover_gateways(site_tree))
    if not topology.gateways:
        logger.warning("No gateways found for site %s (%s)", site.name, site.id)

    for gateway in topology.gateways:
        try:
            gateway_tree = await client.fetch_org_tree(gateway.element_dn)
        except HarvesterError as exc:
            logger.warning(
                "Skipping gateway %s (%s): %s", gateway.node_name, gateway.element_dn, exc
            )
            topology.devices_by_gateway[gateway.element_dn] = []
            continue

        try:
            children = await client.fetch_children(gateway.element_dn)
        except HarvesterError as exc:
            logger.warning("No children-list for gateway %s: %s", gateway.node_name, exc)
            children = []

        nodes = [n for n in discover_devices(gateway_tree) if n.element_dn != gateway.element_dn]
        topology.children_by_gateway[gateway.element_dn] = children
        topology.devices_by_gateway[gateway.element_dn] = classify_devices(
            nodes, site, gateway, children
        )

    devices = topology.devices()
    unclassified = topology.by_category(DeviceCategory.UNCLASSIFIED)
    logger.info(
        "Discovered site %s: %d gateways, %d devices (%d unclassified)",
        site.name,
        len(topology.gateways),
        len(devices),
        len(unclassified),
    )
    return topology
