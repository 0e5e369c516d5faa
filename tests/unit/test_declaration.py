"""Unit tests for declaration module."""

from pathlib import Path

import pytest

from azdeploy.declaration import load_declaration, parse_declaration
from azdeploy.models import DeclarationError, ResourceId, ResourceKind
from azdeploy.planner import plan

EXAMPLE = Path(__file__).resolve().parents[2] / "examples" / "windows_vm.yaml"

DECLARATION = """
name: demo
location: westus2
resource_group: rg
resources:
  - kind: resource_group
    name: rg
  - kind: virtual_network
    name: vnet
    properties:
      address_space: 10.0.0.0/16
    depends_on: [rg]
  - kind: network_interface
    name: nic
    properties:
      network: vnet
      subnet: default
      location: eastus
    depends_on:
      - virtual_network/vnet
"""


class TestLoadDeclaration:
    """Tests for loading YAML declarations."""

    def test_load(self, tmp_path):
        path = tmp_path / "demo.yaml"
        path.write_text(DECLARATION)

        declaration = load_declaration(path)

        assert declaration.name == "demo"
        assert [r.name for r in declaration.resources] == ["rg", "vnet", "nic"]
        vnet = declaration.resources[1]
        assert vnet.depends_on == (ResourceId(ResourceKind.RESOURCE_GROUP, "rg"),)
        assert vnet.get("address_space") == "10.0.0.0/16"

    def test_defaults_injected(self, tmp_path):
        path = tmp_path / "demo.yaml"
        path.write_text(DECLARATION)

        rg, vnet, nic = load_declaration(path).resources

        assert rg.get("location") == "westus2"
        assert rg.get("resource_group") is None
        assert vnet.get("location") == "westus2"
        assert vnet.get("resource_group") == "rg"
        # Explicit properties win
        assert nic.get("location") == "eastus"

    def test_missing_file(self, tmp_path):
        with pytest.raises(DeclarationError, match="not found"):
            load_declaration(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("resources: [unclosed")
        with pytest.raises(DeclarationError, match="Failed to parse YAML"):
            load_declaration(path)

    def test_name_defaults_to_file_stem(self, tmp_path):
        path = tmp_path / "my-deployment.yaml"
        path.write_text("resources:\n  - kind: resource_group\n    name: rg\n")
        assert load_declaration(path).name == "my-deployment"

    def test_example_declaration(self):
        declaration = load_declaration(EXAMPLE)
        execution_plan = plan(declaration.graph())

        assert execution_plan.as_strings() == [
            "resource_group/myResourceGroup",
            "availability_set/myAVSet",
            "public_ip/myPublicIP",
            "virtual_network/myVNet",
            "network_interface/myNIC",
            "virtual_machine/myVM",
        ]


class TestParseDeclaration:
    """Tests for declaration structure validation."""

    def test_not_a_mapping(self):
        with pytest.raises(DeclarationError, match="must be a mapping"):
            parse_declaration(["a"])

    def test_missing_resources(self):
        with pytest.raises(DeclarationError, match="non-empty 'resources'"):
            parse_declaration({"name": "x"})

    def test_entry_without_kind(self):
        with pytest.raises(DeclarationError, match="must have 'kind' and 'name'"):
            parse_declaration({"name": "x", "resources": [{"name": "rg"}]})

    @pytest.mark.parametrize("name", [None, "", "   "])
    def test_empty_resource_name(self, name):
        data = {"name": "x", "resources": [{"kind": "public_ip", "name": name}]}
        with pytest.raises(DeclarationError, match="has an empty name"):
            parse_declaration(data)

    def test_empty_name_from_yaml(self, tmp_path):
        path = tmp_path / "demo.yaml"
        path.write_text("resources:\n  - kind: resource_group\n    name:\n")
        with pytest.raises(DeclarationError, match="#1 has an empty name"):
            load_declaration(path)

    def test_default_location_when_unset(self):
        data = {"name": "x", "resources": [{"kind": "resource_group", "name": "rg"}]}
        declaration = parse_declaration(data, default_location="northeurope")
        assert declaration.location == "northeurope"
        assert declaration.resources[0].get("location") == "northeurope"

    def test_declared_location_beats_default(self):
        data = {
            "name": "x",
            "location": "westus2",
            "resources": [{"kind": "resource_group", "name": "rg"}],
        }
        declaration = parse_declaration(data, default_location="northeurope")
        assert declaration.resources[0].get("location") == "westus2"

    def test_unknown_kind(self):
        with pytest.raises(DeclarationError, match="unknown kind"):
            parse_declaration({"name": "x", "resources": [{"kind": "load_balancer", "name": "lb"}]})

    def test_unknown_bare_dependency(self):
        data = {
            "name": "x",
            "resources": [{"kind": "public_ip", "name": "ip", "depends_on": ["rg"]}],
        }
        with pytest.raises(DeclarationError, match="undeclared resource 'rg'"):
            parse_declaration(data)

    def test_ambiguous_bare_dependency(self):
        data = {
            "name": "x",
            "resources": [
                {"kind": "resource_group", "name": "shared"},
                {"kind": "public_ip", "name": "shared"},
                {"kind": "network_interface", "name": "nic", "depends_on": ["shared"]},
            ],
        }
        with pytest.raises(DeclarationError, match="ambiguous"):
            parse_declaration(data)

    def test_single_string_dependency(self):
        data = {
            "name": "x",
            "resources": [
                {"kind": "resource_group", "name": "rg"},
                {"kind": "public_ip", "name": "ip", "depends_on": "rg"},
            ],
        }
        ip = parse_declaration(data).resources[1]
        assert ip.depends_on == (ResourceId(ResourceKind.RESOURCE_GROUP, "rg"),)

    def test_qualified_dependency_checked_by_graph(self):
        data = {
            "name": "x",
            "resources": [{"kind": "public_ip", "name": "ip", "depends_on": ["resource_group/rg"]}],
        }
        declaration = parse_declaration(data)
        with pytest.raises(DeclarationError, match="undeclared resource resource_group/rg"):
            declaration.graph()

    def test_properties_must_be_mapping(self):
        data = {"name": "x", "resources": [{"kind": "public_ip", "name": "ip", "properties": [1]}]}
        with pytest.raises(DeclarationError, match="properties must be a mapping"):
            parse_declaration(data)
