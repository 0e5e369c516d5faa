"""Unit tests for graph module."""

import pytest

from azdeploy.graph import build_graph
from azdeploy.models import DeclarationError, Resource, ResourceId, ResourceKind


def rg(name="g"):
    return Resource(ResourceKind.RESOURCE_GROUP, name)


class TestBuildGraph:
    """Test graph construction and validation."""

    def test_preserves_declaration_order(self, chain_resources):
        graph = build_graph(reversed(chain_resources))
        assert [str(rid) for rid in graph.ids] == [
            "virtual_machine/v",
            "network_interface/i",
            "virtual_network/n",
            "resource_group/g",
        ]

    def test_duplicate_identifier(self):
        with pytest.raises(DeclarationError, match="duplicate resource resource_group/g"):
            build_graph([rg(), rg()])

    def test_same_name_different_kind_allowed(self):
        graph = build_graph([rg("x"), Resource(ResourceKind.PUBLIC_IP, "x")])
        assert len(graph) == 2

    def test_undeclared_dependency(self):
        missing = ResourceId(ResourceKind.VIRTUAL_NETWORK, "missing")
        nic = Resource(ResourceKind.NETWORK_INTERFACE, "nic", depends_on=(missing,))

        with pytest.raises(DeclarationError, match="undeclared resource virtual_network/missing"):
            build_graph([nic])

    def test_self_dependency(self):
        ip_id = ResourceId(ResourceKind.PUBLIC_IP, "ip")
        with pytest.raises(DeclarationError, match="depends on itself"):
            build_graph([Resource(ResourceKind.PUBLIC_IP, "ip", depends_on=(ip_id,))])

    def test_reports_every_problem(self):
        missing = ResourceId(ResourceKind.VIRTUAL_NETWORK, "missing")
        with pytest.raises(DeclarationError) as exc_info:
            build_graph([rg(), rg(), Resource(ResourceKind.NETWORK_INTERFACE, "nic", depends_on=(missing,))])
        assert len(exc_info.value.problems) == 2

    def test_empty_name(self):
        with pytest.raises(DeclarationError, match="without a name"):
            build_graph([Resource(ResourceKind.PUBLIC_IP, "")])


class TestResourceGraph:
    """Test graph queries."""

    def test_dependencies_of(self, chain_resources):
        g, n, i, v = chain_resources
        graph = build_graph(chain_resources)

        assert graph.dependencies_of(i.id) == (n.id,)
        assert graph.dependencies_of(g.id) == ()

    def test_transitive_dependencies(self, chain_resources):
        g, n, i, v = chain_resources
        graph = build_graph(chain_resources)

        assert graph.transitive_dependencies(v.id) == {g.id, n.id, i.id}
        assert graph.transitive_dependencies(g.id) == set()

    def test_contains_and_get(self, chain_resources):
        graph = build_graph(chain_resources)
        g = chain_resources[0]
        assert g.id in graph
        assert graph.get(g.id) is g
