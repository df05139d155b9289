"""
Unit tests for topology discovery (discovery module).

Tests verify:
- The tree walk tolerates JSON-string, malformed and cyclic childList values.
- Gateways are found at any depth and returned once.
- Classification applies the inverter type code before name rules and keeps
  the first declared rule on multi-matches.
- discover_topology() builds per-gateway device lists, attaches static info,
  isolates per-gateway failures and falls back to a recovered tree.

CHANGELOG:
- 2026-03-03: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock

import pytest
from harvester.src.discovery import (
    classify,
    discover_devices,
    discover_gateways,
    discover_topology,
    find_subtree,
    walk_tree,
)
from harvester.src.errors import DiscoveryFailedError, PortalResponseError
from harvester.src.models import ChildDevice, DeviceCategory, DeviceNode, SiteConfig

_SITE = SiteConfig(id="NE=100", name="Shundao 1")


def _node(dn: str, name: str, *, type_id: int = 0, is_parent: bool = False, **extra: Any) -> dict:
    return {
        "elementDn": dn,
        "nodeName": name,
        "typeId": type_id,
        "isParent": is_parent,
        **extra,
    }


def _gateway_tree() -> dict[str, Any]:
    return {
        "childList": [
            _node(
                "NE=200",
                "Smartlogger_1",
                is_parent=True,
                childList=[
                    _node("NE=301", "INV-01", type_id=23022),
                    _node("NE=302", "Meter_A"),
                ],
            )
        ]
    }


def _site_tree() -> dict[str, Any]:
    return {
        "childList": [
            _node(
                "NE=100",
                "Shundao 1",
                is_parent=True,
                childList=[_node("NE=200", "Smartlogger_1", is_parent=True)],
            )
        ]
    }


class TestWalkTree:
    """Iterative walk over nested childList arrays."""

    def test_preorder_with_parent_dn(self) -> None:
        """Nodes are yielded depth-first with their parent's DN."""
        nodes = list(walk_tree(_gateway_tree()))

        assert [n.element_dn for n in nodes] == ["NE=200", "NE=301", "NE=302"]
        assert nodes[0].parent_dn == ""
        assert nodes[1].parent_dn == "NE=200"

    def test_json_string_child_list_decoded(self) -> None:
        """A childList sent as a JSON string is parsed."""
        tree = {"childList": json.dumps([_node("NE=1", "INV-01")])}

        assert [n.element_dn for n in walk_tree(tree)] == ["NE=1"]

    def test_unparsable_child_list_skipped(self) -> None:
        """A broken childList string loses only that subtree."""
        tree = {
            "childList": [
                _node("NE=1", "Group", is_parent=True, childList="[not json"),
                _node("NE=2", "INV-02"),
            ]
        }

        assert [n.element_dn for n in walk_tree(tree)] == ["NE=1", "NE=2"]

    def test_non_dict_entries_skipped(self) -> None:
        """Entries that are not objects are ignored."""
        tree = {"childList": [None, "junk", 5, _node("NE=1", "INV-01")]}

        assert [n.element_dn for n in walk_tree(tree)] == ["NE=1"]

    def test_malformed_node_children_still_walked(self) -> None:
        """A node failing validation is skipped, its children are not."""
        tree = {
            "childList": [
                {"elementDn": "NE=1", "typeId": "bogus", "childList": [_node("NE=2", "Meter_B")]}
            ]
        }

        nodes = list(walk_tree(tree))
        assert [n.element_dn for n in nodes] == ["NE=2"]
        assert nodes[0].parent_dn == "NE=1"

    def test_cyclic_structure_terminates(self) -> None:
        """A node reachable from itself is visited once."""
        root = _node("NE=1", "Group", is_parent=True)
        root["childList"] = [root, _node("NE=2", "INV-02")]

        assert [n.element_dn for n in walk_tree({"childList": [root]})] == ["NE=1", "NE=2"]

    def test_deep_tree_does_not_recurse(self) -> None:
        """Very deep nesting is walked without hitting the recursion limit."""
        leaf = _node("NE=leaf", "INV-deep")
        tree = leaf
        for depth in range(5000):
            tree = _node(f"NE=g{depth}", "Group", is_parent=True, childList=[tree])

        nodes = list(walk_tree({"childList": [tree]}))
        assert nodes[-1].element_dn == "NE=leaf"

    @pytest.mark.parametrize("tree", [None, 42, "text"])
    def test_non_tree_input_yields_nothing(self, tree: Any) -> None:
        """Scalars produce no nodes."""
        assert list(walk_tree(tree)) == []

    def test_find_subtree(self) -> None:
        """find_subtree() returns the raw node with the requested DN."""
        found = find_subtree(_gateway_tree(), "NE=302")

        assert found is not None
        assert found["nodeName"] == "Meter_A"
        assert find_subtree(_gateway_tree(), "NE=999") is None


class TestDiscoverGatewaysAndDevices:
    """Gateway and leaf extraction."""

    def test_nested_gateway_returned_once(self) -> None:
        """A gateway listed twice at different depths is returned once."""
        gateway = _node("NE=200", "SmartLogger3000", is_parent=True)
        tree = {
            "childList": [
                _node("NE=10", "Area", is_parent=True, childList=[dict(gateway)]),
                _node("NE=11", "Area 2", is_parent=True, childList=[
                    _node("NE=12", "Sub", is_parent=True, childList=[dict(gateway)])
                ]),
            ]
        }

        gateways = discover_gateways(tree)
        assert [g.element_dn for g in gateways] == ["NE=200"]

    def test_leaves_only(self) -> None:
        """Parent nodes and nodes without a DN are not devices."""
        tree = {
            "childList": [
                _node("NE=200", "Smartlogger_1", is_parent=True, childList=[
                    _node("NE=301", "INV-01"),
                    _node("", "Ghost"),
                    _node("NE=301", "INV-01"),
                ])
            ]
        }

        assert [d.element_dn for d in discover_devices(tree)] == ["NE=301"]


class TestClassify:
    """Ordered classification rules."""

    @pytest.mark.parametrize(
        ("name", "type_id", "expected"),
        [
            ("INV-01", 23022, DeviceCategory.INVERTER),
            ("Inverter 7", 0, DeviceCategory.INVERTER),
            ("Meter_A", 0, DeviceCategory.METER),
            ("EMI-1", 0, DeviceCategory.SENSOR),
            ("EMIC box", 0, DeviceCategory.SENSOR),
            ("Weather station", 0, DeviceCategory.SENSOR),
            ("Irradiance Sensor", 0, DeviceCategory.SENSOR),
            ("Transformer", 0, DeviceCategory.UNCLASSIFIED),
        ],
    )
    def test_categories(self, name: str, type_id: int, expected: DeviceCategory) -> None:
        """Each name / type code maps to one category."""
        assert classify(DeviceNode(element_dn="NE=1", node_name=name, type_id=type_id)) is expected

    def test_type_code_beats_name(self) -> None:
        """The inverter type code wins over a meter-looking name."""
        node = DeviceNode(element_dn="NE=1", node_name="Meter-ish", type_id=23022)
        assert classify(node) is DeviceCategory.INVERTER

    def test_multi_match_keeps_first_rule(self, caplog: pytest.LogCaptureFixture) -> None:
        """A name matching two categories keeps the first declared one."""
        node = DeviceNode(element_dn="NE=1", node_name="Inverter meter")

        with caplog.at_level("INFO"):
            assert classify(node) is DeviceCategory.INVERTER
        assert "several categories" in caplog.text


class TestDiscoverTopology:
    """Site-level discovery through a mocked portal client."""

    @pytest.mark.asyncio
    async def test_gateway_with_inverter_and_meter(self) -> None:
        """One gateway with an inverter and a meter yields both, classified."""
        client = AsyncMock()
        client.fetch_org_tree.side_effect = [_site_tree(), _gateway_tree()]
        client.fetch_children.return_value = [
            ChildDevice(
                dn="NE=301",
                name="INV-01",
                param_values={"50009": "SUN2000-100KTL", "50012": "SN-001"},
            )
        ]

        topology = await discover_topology(client, _SITE)

        assert [g.element_dn for g in topology.gateways] == ["NE=200"]
        devices = topology.devices()
        assert [d.dn for d in devices] == ["NE=301", "NE=302"]
        inverters = topology.by_category(DeviceCategory.INVERTER)
        meters = topology.by_category(DeviceCategory.METER)
        assert len(inverters) == 1
        assert len(meters) == 1
        assert inverters[0].model == "SUN2000-100KTL"
        assert inverters[0].serial == "SN-001"
        assert inverters[0].gateway_name == "Smartlogger_1"
        assert meters[0].model == ""
        client.fetch_org_tree.assert_any_await("NE=200")
        client.fetch_children.assert_awaited_once_with("NE=200")

    @pytest.mark.asyncio
    async def test_unclassified_devices_kept(self) -> None:
        """Devices matching no rule stay in the snapshot as UNCLASSIFIED."""
        gateway_tree = {
            "childList": [
                _node("NE=200", "Smartlogger_1", is_parent=True, childList=[
                    _node("NE=310", "Transformer T1")
                ])
            ]
        }
        client = AsyncMock()
        client.fetch_org_tree.side_effect = [_site_tree(), gateway_tree]
        client.fetch_children.return_value = []

        topology = await discover_topology(client, _SITE)

        assert [d.category for d in topology.devices()] == [DeviceCategory.UNCLASSIFIED]

    @pytest.mark.asyncio
    async def test_site_tree_failure_raises(self) -> None:
        """Without a recovered tree, a failed site request is a discovery failure."""
        client = AsyncMock()
        client.fetch_org_tree.side_effect = PortalResponseError("boom", status=500)

        with pytest.raises(DiscoveryFailedError) as exc_info:
            await discover_topology(client, _SITE)
        assert exc_info.value.site_id == "NE=100"

    @pytest.mark.asyncio
    async def test_recovered_tree_used_as_fallback(self) -> None:
        """The tree recovered from browser traffic replaces a failed site request."""
        client = AsyncMock()
        client.fetch_org_tree.side_effect = [PortalResponseError("boom"), _gateway_tree()]
        client.fetch_children.return_value = []
        recovered = {"childList": _site_tree()["childList"]}

        topology = await discover_topology(client, _SITE, fallback_tree=recovered)

        assert [g.element_dn for g in topology.gateways] == ["NE=200"]
        assert len(topology.devices()) == 2

    @pytest.mark.asyncio
    async def test_recovered_tree_without_site_raises(self) -> None:
        """A recovered tree that lacks the site does not help."""
        client = AsyncMock()
        client.fetch_org_tree.side_effect = PortalResponseError("boom")

        with pytest.raises(DiscoveryFailedError):
            await discover_topology(client, _SITE, fallback_tree={"childList": []})

    @pytest.mark.asyncio
    async def test_failing_gateway_isolated(self) -> None:
        """One gateway's failure does not lose the others."""
        site_tree = {
            "childList": [
                _node("NE=200", "Smartlogger_1", is_parent=True),
                _node("NE=201", "Smartlogger_2", is_parent=True),
            ]
        }
        second = {
            "childList": [
                _node("NE=201", "Smartlogger_2", is_parent=True, childList=[
                    _node("NE=401", "Meter_B")
                ])
            ]
        }
        client = AsyncMock()
        client.fetch_org_tree.side_effect = [site_tree, PortalResponseError("boom"), second]
        client.fetch_children.return_value = []

        topology = await discover_topology(client, _SITE)

        assert topology.devices_by_gateway["NE=200"] == []
        assert [d.dn for d in topology.devices_by_gateway["NE=201"]] == ["NE=401"]

    @pytest.mark.asyncio
    async def test_children_failure_keeps_devices(self) -> None:
        """A failed children-list only loses static info."""
        client = AsyncMock()
        client.fetch_org_tree.side_effect = [_site_tree(), _gateway_tree()]
        client.fetch_children.side_effect = PortalResponseError("boom")

        topology = await discover_topology(client, _SITE)

        assert len(topology.devices()) == 2
        assert all(d.model == "" for d in topology.devices())
