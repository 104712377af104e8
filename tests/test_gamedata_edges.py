"""
Tests for game data edge extraction.

Each test parses a small record the way files appear in the game data tree
and checks the typed edges one extractor produces.
"""

from knowledge_index.services.corpus import EdgeType
from knowledge_index.services.gamedata_edges import extract_gamedata_edges, extract_related_edges
from knowledge_index.services.identifier_resolver import IdentifierResolver, StemLookup
from knowledge_index.services.records import Record

ITEMS = [
    ("gamedata:Items/Torch.json", "Torch"),
    ("gamedata:Items/Wood_Stick.json", "Wood_Stick"),
    ("gamedata:Items/Iron_Ingot.json", "Iron_Ingot"),
    ("gamedata:Items/Iron_Ore.json", "Iron_Ore"),
    ("gamedata:Items/Gold_Coin.json", "Gold_Coin"),
    ("gamedata:Items/Bone.json", "Bone"),
    ("gamedata:NPCs/Goblin.json", "Goblin"),
    ("gamedata:NPCs/Goblin_Chief.json", "Goblin_Chief"),
    ("gamedata:Drops/Drop_Goblin.json", "Drop_Goblin"),
    ("gamedata:Groups/Goblins.json", "Goblins"),
]


def extract(data_type, data, source_id):
    resolver = IdentifierResolver(StemLookup.from_pairs(ITEMS))
    return extract_gamedata_edges(data_type, Record(data), resolver, source_id)


def of_type(edges, edge_type):
    return [e for e in edges if e.edge_type == edge_type]


class TestItemEdges:

    def test_inline_recipe_requires_inputs_without_producing_itself(self):
        edges = extract(
            "item",
            {"Recipe": {"Input": [{"ItemId": "Wood_Stick", "Quantity": 1}]}},
            "gamedata:Items/Torch.json",
        )

        assert len(edges) == 1
        assert edges[0].edge_type == EdgeType.REQUIRES_ITEM
        assert edges[0].source_id == "gamedata:Items/Torch.json"
        assert edges[0].target_id == "gamedata:Items/Wood_Stick.json"
        assert of_type(edges, EdgeType.PRODUCES_ITEM) == []

    def test_item_without_recipe_has_no_edges(self):
        assert extract("item", {"MaxStack": 64}, "gamedata:Items/Torch.json") == []

    def test_resource_type_input_is_virtual(self):
        edges = extract(
            "item",
            {"Recipe": {"Input": [{"ResourceTypeId": "Wood", "Quantity": 2}], "BenchRequirement": "Workbench"}},
            "gamedata:Items/Torch.json",
        )

        targets = {(e.edge_type, e.target_id) for e in edges}
        assert (EdgeType.REQUIRES_ITEM, "virtual:resource:Wood") in targets
        assert (EdgeType.REQUIRES_BENCH, "virtual:bench:Workbench") in targets


class TestRecipeEdges:

    def test_primary_output(self):
        edges = extract(
            "recipe",
            {"Input": [{"ItemId": "Iron_Ore"}], "PrimaryOutput": {"ItemId": "Iron_Ingot"}},
            "gamedata:Recipes/Smelt_Iron.json",
        )

        produced = of_type(edges, EdgeType.PRODUCES_ITEM)
        assert len(produced) == 1
        assert produced[0].target_id == "gamedata:Items/Iron_Ingot.json"
        assert produced[0].metadata == {"role": "primary"}
        assert [e.target_id for e in of_type(edges, EdgeType.REQUIRES_ITEM)] == ["gamedata:Items/Iron_Ore.json"]

    def test_secondary_outputs_and_legacy_inputs(self):
        edges = extract(
            "recipe",
            {"ingredients": [{"item": "Iron_Ore"}], "Output": [{"ItemId": "Bone"}], "station": "Furnace"},
            "gamedata:Recipes/Odd.json",
        )

        produced = of_type(edges, EdgeType.PRODUCES_ITEM)
        assert [(e.target_id, e.metadata) for e in produced] == [
            ("gamedata:Items/Bone.json", {"role": "secondary"})
        ]
        assert [e.target_id for e in of_type(edges, EdgeType.REQUIRES_BENCH)] == ["virtual:bench:Furnace"]
        assert len(of_type(edges, EdgeType.REQUIRES_ITEM)) == 1


class TestDropEdges:

    def test_nested_container_item(self):
        edges = extract(
            "drop",
            {"Container": {"Type": "Multiple", "Containers": [{"Type": "Single", "Item": {"ItemId": "Gold_Coin"}}]}},
            "gamedata:Drops/Drop_Goblin.json",
        )

        assert len(edges) == 1
        assert edges[0].edge_type == EdgeType.DROPS_ITEM
        assert edges[0].source_id == "gamedata:Drops/Drop_Goblin.json"
        assert edges[0].target_id == "gamedata:Items/Gold_Coin.json"

    def test_flat_drop_list(self):
        edges = extract("drop", {"drops": ["Bone", {"item": "Gold_Coin"}]}, "gamedata:Drops/Drop_Goblin.json")
        assert [e.target_id for e in edges] == ["gamedata:Items/Bone.json", "gamedata:Items/Gold_Coin.json"]

    def test_unknown_items_produce_nothing(self):
        assert extract("drop", {"drops": ["Dragon_Scale"]}, "gamedata:Drops/Drop_Goblin.json") == []


class TestNpcEdges:

    def test_drop_list_links_npc_to_drop_table(self):
        edges = extract("npc", {"DropList": "Drop_Goblin"}, "gamedata:NPCs/Goblin.json")

        assert [(e.edge_type, e.target_id) for e in edges] == [
            (EdgeType.DROPS_ON_DEATH, "gamedata:Drops/Drop_Goblin.json")
        ]

    def test_particles_and_target_groups(self):
        edges = extract(
            "npc",
            {"ApplicationEffects": {"Particles": [{"SystemId": "Poison_Cloud"}]}, "TargetGroups": ["Goblins"]},
            "gamedata:NPCs/Goblin_Chief.json",
        )

        targets = {(e.edge_type, e.target_id) for e in edges}
        assert (EdgeType.SPAWNS_PARTICLE, "virtual:particle:Poison_Cloud") in targets
        assert (EdgeType.TARGETS_GROUP, "gamedata:Groups/Goblins.json") in targets


class TestShopAndGroupEdges:

    def test_trade_slots_carry_cost(self):
        edges = extract(
            "shop",
            {"TradeSlots": [{"Trade": {"Output": {"ItemId": "Torch"},
                                       "Input": [{"ItemId": "Gold_Coin", "Quantity": 3}]}}]},
            "gamedata:Shops/General.json",
        )

        assert len(edges) == 1
        assert edges[0].edge_type == EdgeType.OFFERED_IN_SHOP
        assert edges[0].target_id == "gamedata:Items/Torch.json"
        assert edges[0].metadata == {"cost_item": "Gold_Coin", "cost_quantity": 3}

    def test_group_members_are_mirrored(self):
        edges = extract(
            "npc_group",
            {"Members": [{"NPC": "Goblin"}, "Goblin_Chief"]},
            "gamedata:Groups/Goblins.json",
        )

        members = of_type(edges, EdgeType.HAS_MEMBER)
        belongs = of_type(edges, EdgeType.BELONGS_TO_GROUP)
        assert [e.target_id for e in members] == ["gamedata:NPCs/Goblin.json", "gamedata:NPCs/Goblin_Chief.json"]
        assert [(e.source_id, e.target_id) for e in belongs] == [
            ("gamedata:NPCs/Goblin.json", "gamedata:Groups/Goblins.json"),
            ("gamedata:NPCs/Goblin_Chief.json", "gamedata:Groups/Goblins.json"),
        ]


class TestDispatch:

    def test_unknown_data_type_produces_nothing(self):
        assert extract("localization", {"Recipe": {"Input": [{"ItemId": "Torch"}]}}, "gamedata:x") == []

    def test_related_ids(self):
        resolver = IdentifierResolver(StemLookup.from_pairs(ITEMS))
        edges = extract_related_edges(["Bone", "Unknown"], resolver, "gamedata:Items/Torch.json")
        assert [(e.edge_type, e.target_id) for e in edges] == [
            (EdgeType.RELATES_TO, "gamedata:Items/Bone.json")
        ]
