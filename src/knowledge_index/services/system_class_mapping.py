"""
Game data type -> implementing server classes.

Drives the IMPLEMENTED_BY bridge from game data nodes to the code that loads
and runs them.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple


@dataclass(frozen=True)
class SystemInfo:
    classes: Tuple[str, ...]
    description: str


SYSTEM_MAP: Dict[str, SystemInfo] = {
    "item": SystemInfo(
        ("Item", "ItemCategory", "ItemArmor", "ItemGroup"),
        "Item definitions, categories, equipment stats, and grouping",
    ),
    "recipe": SystemInfo(
        ("CraftingRecipe", "BenchRecipeRegistry", "CraftingConfig"),
        "Crafting recipe system: inputs, outputs, bench requirements, timing",
    ),
    "drop": SystemInfo(
        ("ItemDropContainer", "SingleItemDropContainer", "MultipleItemDropContainer",
         "ChoiceItemDropContainer", "ItemDropList"),
        "Hierarchical loot drop system with weighted random selection",
    ),
    "block": SystemInfo(("BlockType",), "Block definitions: materials, hardness, light emission"),
    "npc": SystemInfo(("NPCConfig", "NPCEntity", "NPCGroup"), "NPC configuration, entity component, and group spawning"),
    "npc_group": SystemInfo(("NPCGroup", "EntityFilterNPCGroup"), "NPC group spawning and faction configuration"),
    "npc_ai": SystemInfo(("MotionController",), "NPC AI state machine and motion control"),
    "interaction": SystemInfo(("InteractionManager", "InteractionChain"), "Interaction chains, conditions, effects"),
    "shop": SystemInfo(("BarterShopAsset", "BarterTrade", "NPCShopPlugin"), "Barter shops, trade slots, NPC shop behavior"),
    "farming": SystemInfo(("FarmingData", "FarmingBlock", "FarmingStageData"), "Farming tick logic and growth stages"),
    "biome": SystemInfo(("BiomeAsset", "CustomBiomeGenerator"), "Biome configuration and terrain generation"),
    "projectile": SystemInfo(("Projectile", "ProjectileConfig"), "Projectile physics and configuration"),
    "weather": SystemInfo(("Weather",), "Weather system"),
    "entity": SystemInfo(("Entity",), "Entity definitions and component system"),
    "cave": SystemInfo(("CavePrefab", "CavePrefabConfig"), "Cave generation prefabs"),
    "environment": SystemInfo(("Environment",), "Environment lighting and atmosphere"),
    "worldgen": SystemInfo(("ChunkGenerator", "WorldGenType", "NStagedChunkGenerator"), "World generation pipeline"),
    "camera": SystemInfo(("CameraShakeConfig", "CameraPlugin"), "Camera effects and configuration"),
    "prefab": SystemInfo(("PrefabLoader", "RecursivePrefabLoader", "UniquePrefabConfiguration"), "Prefab loading and placement"),
    "objective": SystemInfo(("KillObjectiveTaskAsset", "NPCObjectivesPlugin"), "Quest and objective task definitions"),
    "zone": SystemInfo(("ZonesJsonLoader", "DiscoverZoneEvent"), "Zone definitions and discovery events"),
}


def for_data_types(data_types: Iterable[str]) -> Dict[str, SystemInfo]:
    return {t: SYSTEM_MAP[t] for t in set(data_types) if t in SYSTEM_MAP}


def data_types_for_class(class_name: str) -> List[str]:
    """Reverse lookup: which game data types a class implements."""
    return sorted(t for t, info in SYSTEM_MAP.items() if class_name in info.classes)
