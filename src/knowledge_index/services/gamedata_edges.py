"""
Game data edge extraction.

One pure function per game data type maps a parsed ``Record`` to typed
edges. Identifiers are resolved through the ``IdentifierResolver``; entities
that have no node type of their own (particle systems, benches, effects,
resource types, world-gen files) become virtual references.

Absent or malformed fields produce no edges for that rule.
"""

from typing import Any, Callable, Dict, Iterable, List, Optional

from .corpus import EdgeType
from .graph_store import EdgeRow
from .identifier_resolver import IdentifierResolver
from .records import FieldAliases as F, Record, number_at, string_or_id

Extractor = Callable[[Record, IdentifierResolver, str], List[EdgeRow]]


# =============================================================================
# Shared rules
# =============================================================================

def _particle_ids(values: Optional[List[Any]]) -> List[str]:
    ids = []
    for el in values or []:
        system_id = Record(el).str_at(*F.SYSTEM_ID) if isinstance(el, dict) else string_or_id(el)
        if system_id:
            ids.append(system_id)
    return ids


def _particles(source_id: str, system_ids: Iterable[str], trigger: str) -> List[EdgeRow]:
    edges = []
    for system_id in system_ids:
        edges += IdentifierResolver.virtual(
            "particle", system_id, source_id, EdgeType.SPAWNS_PARTICLE, {"trigger": trigger}
        )
    return edges


def _bench_requirement(record: Record, source_id: str) -> List[EdgeRow]:
    bench = record.value_at(*F.BENCH)
    ids: List[str] = []
    if isinstance(bench, list):
        ids = [i for i in (string_or_id(el) for el in bench) if i]
    elif bench is not None:
        bench_id = string_or_id(bench)
        ids = [bench_id] if bench_id else []
    else:
        legacy = record.str_at(*F.BENCH_LEGACY)
        ids = [legacy] if legacy else []

    edges = []
    for bench_id in ids:
        edges += IdentifierResolver.virtual("bench", bench_id, source_id, EdgeType.REQUIRES_BENCH)
    return edges


def _recipe_inputs(record: Record, resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    """REQUIRES_ITEM from the first input list that yields any edge."""
    for key in F.RECIPE_INPUTS:
        inputs = record.array_at(key)
        if inputs is None:
            continue
        edges: List[EdgeRow] = []
        for el in inputs:
            if not isinstance(el, dict):
                continue
            entry = Record(el)
            item_id = entry.str_at(*F.ITEM_ID)
            if item_id:
                edges += resolver.resolve_stem(item_id, source_id, EdgeType.REQUIRES_ITEM)
            else:
                edges += IdentifierResolver.virtual(
                    "resource", entry.str_at(*F.RESOURCE_TYPE), source_id, EdgeType.REQUIRES_ITEM
                )
        if edges:
            return edges
    return []


def _death_drops(value: Any, resolver: IdentifierResolver, source_id: str, allow_list: bool) -> List[EdgeRow]:
    if isinstance(value, list):
        if not allow_list:
            return []
        edges = []
        for el in value:
            edges += resolver.resolve_stem(string_or_id(el), source_id, EdgeType.DROPS_ON_DEATH)
        return edges
    return resolver.resolve_stem(string_or_id(value), source_id, EdgeType.DROPS_ON_DEATH)


def _group_refs(values: Optional[List[Any]], resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    edges = []
    for el in values or []:
        edges += resolver.resolve_stem(string_or_id(el), source_id, EdgeType.TARGETS_GROUP)
    return edges


def collect_container_item_ids(container: Record, out: List[str]) -> None:
    """Walk a nested drop Container collecting item ids."""
    direct = container.str_at("Item.ItemId")
    if direct:
        out.append(direct)
        return
    flat = container.str_at("ItemId")
    if flat:
        out.append(flat)
        return

    for key in F.DROP_CONTAINER_CHILDREN:
        child = container.value_at(key)
        if isinstance(child, list):
            for el in child:
                if isinstance(el, dict):
                    collect_container_item_ids(Record(el), out)
        elif isinstance(child, dict):
            collect_container_item_ids(Record(child), out)


# =============================================================================
# Per-type extractors
# =============================================================================

def extract_item_edges(record: Record, resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    """Inline item recipes. An item is implicitly its own output, so no PRODUCES_ITEM."""
    edges = _particles(
        source_id, _particle_ids(record.array_at("BlockType.Particles")), "block_state"
    )
    recipe = record.object_at("Recipe")
    if recipe is None:
        return edges
    edges += _bench_requirement(recipe, source_id)
    edges += _recipe_inputs(recipe, resolver, source_id)
    return edges


def extract_recipe_edges(record: Record, resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    edges = _bench_requirement(record, source_id)
    edges += _recipe_inputs(record, resolver, source_id)

    primary = record.str_at(*F.PRIMARY_OUTPUT)
    if primary:
        edges += resolver.resolve_stem(primary, source_id, EdgeType.PRODUCES_ITEM, {"role": "primary"})

    outputs = record.array_at(*F.SECONDARY_OUTPUTS)
    for el in outputs or []:
        item_id = Record(el).str_at(*F.ITEM_ID) if isinstance(el, dict) else None
        edges += resolver.resolve_stem(item_id, source_id, EdgeType.PRODUCES_ITEM, {"role": "secondary"})

    legacy = record.str_at(*F.LEGACY_RESULT)
    if legacy:
        edges += resolver.resolve_stem(legacy, source_id, EdgeType.PRODUCES_ITEM, {"role": "primary"})
    return edges


def extract_drop_edges(record: Record, resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    item_ids: List[str] = []
    container = record.object_at("Container")
    if container is not None:
        collect_container_item_ids(container, item_ids)

    if not item_ids:
        for key in F.DROP_FLAT_LISTS:
            for el in record.array_at(key) or []:
                item_id = Record(el).str_at(*F.ITEM_ID) if isinstance(el, dict) else string_or_id(el)
                if item_id:
                    item_ids.append(item_id)

    edges = []
    for item_id in item_ids:
        edges += resolver.resolve_stem(item_id, source_id, EdgeType.DROPS_ITEM)
    return edges


def extract_npc_edges(record: Record, resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    modify = record.sub("Modify")
    edges = []
    for src in (record, modify):
        edges += _particles(
            source_id, _particle_ids(src.array_at("ApplicationEffects.Particles")), "applied"
        )

    edges += _group_refs(record.array_at(*F.TARGET_GROUPS), resolver, source_id)
    edges += _group_refs(modify.array_at(*F.TARGET_GROUPS), resolver, source_id)
    edges += _group_refs(record.array_at(*F.ACCEPTED_GROUPS), resolver, source_id)

    drop_list = record.str_at(*F.DROP_LIST) or modify.str_at(*F.DROP_LIST)
    if drop_list:
        edges += resolver.resolve_stem(drop_list, source_id, EdgeType.DROPS_ON_DEATH)

    for key in F.NPC_DROPS:
        value = modify.value_at(key)
        if value is None:
            value = record.value_at(key)
        if value is None:
            continue
        edges += _death_drops(value, resolver, source_id, allow_list=True)
        break
    return edges


def _trade_metadata(trade: Record) -> Dict[str, Any]:
    cost = trade.value_at(*F.TRADE_COST)
    if isinstance(cost, list):
        cost = next((el for el in cost if isinstance(el, dict)), None)
    if not isinstance(cost, dict):
        return {}
    cost_record = Record(cost)
    metadata: Dict[str, Any] = {}
    cost_item = cost_record.str_at(*F.ITEM_ID)
    if cost_item:
        metadata["cost_item"] = cost_item
    quantity = number_at(cost_record, *F.QUANTITY)
    if quantity is not None:
        metadata["cost_quantity"] = quantity
    return metadata


def extract_shop_edges(record: Record, resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    """Fixed trades (Trade) and pooled trades (Trades[]) per slot, plus the legacy Items list."""
    edges = []
    for slot in record.array_at(*F.TRADE_SLOTS) or []:
        if not isinstance(slot, dict):
            continue
        slot_record = Record(slot)
        trades = []
        fixed = slot_record.object_at("Trade")
        if fixed is not None:
            trades.append(fixed)
        trades += [Record(t) for t in slot_record.array_at("Trades") or [] if isinstance(t, dict)]
        for trade in trades:
            item_id = trade.str_at(*F.TRADE_OUTPUT_ITEM)
            if item_id:
                edges += resolver.resolve_stem(
                    item_id, source_id, EdgeType.OFFERED_IN_SHOP, _trade_metadata(trade)
                )

    for key in F.LEGACY_SHOP_ITEMS:
        for el in record.array_at(key) or []:
            item_id = Record(el).str_at(*F.ITEM_ID) if isinstance(el, dict) else string_or_id(el)
            edges += resolver.resolve_stem(item_id, source_id, EdgeType.OFFERED_IN_SHOP)
    return edges


def extract_group_edges(record: Record, resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    """HAS_MEMBER group -> npc, mirrored as BELONGS_TO_GROUP npc -> group."""
    npc_ids: List[str] = []
    for key in F.GROUP_MEMBERS:
        for el in record.array_at(key) or []:
            npc_id = string_or_id(el, F.GROUP_MEMBER_ID)
            if npc_id:
                npc_ids.append(npc_id)
        if npc_ids:
            break
    if not npc_ids:
        for key in F.GROUP_NPCS:
            for el in record.array_at(key) or []:
                npc_id = string_or_id(el)
                if npc_id:
                    npc_ids.append(npc_id)
            if npc_ids:
                break

    edges = []
    for npc_id in npc_ids:
        forward = resolver.resolve_stem(npc_id, source_id, EdgeType.HAS_MEMBER)
        edges += forward
        edges += [
            EdgeRow(
                source_id=edge.target_id,
                target_id=source_id,
                edge_type=EdgeType.BELONGS_TO_GROUP,
                metadata=dict(edge.metadata),
                target_resolved=edge.target_resolved,
            )
            for edge in forward
        ]
    return edges


def extract_objective_edges(record: Record, resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    edges = []
    for key in F.TASK_SETS:
        for task_set in record.array_at(key) or []:
            if not isinstance(task_set, dict):
                continue
            for task_key in F.TASKS:
                for task in Record(task_set).array_at(task_key) or []:
                    if isinstance(task, dict):
                        group_id = Record(task).str_at(*F.NPC_GROUP_ID)
                        edges += resolver.resolve_stem(group_id, source_id, EdgeType.TARGETS_GROUP)
    return edges


def extract_entity_edges(record: Record, resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    edges = _particles(
        source_id, _particle_ids(record.array_at("ApplicationEffects.Particles")), "applied"
    )
    for key in F.NPC_DROPS:
        value = record.value_at(key)
        if value is None:
            continue
        edges += _death_drops(value, resolver, source_id, allow_list=False)
        break
    return edges


def extract_block_edges(record: Record, resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    """Particles keyed by trigger event, and the block's loot table."""
    edges = []
    particles = record.object_at("Particles")
    if particles is not None:
        for event, value in particles.items():
            system_id = Record(value).str_at(*F.SYSTEM_ID) if isinstance(value, dict) else string_or_id(value)
            if system_id:
                edges += _particles(source_id, [system_id], event)

    for key in F.BLOCK_DROPS:
        value = record.value_at(key)
        if value is None:
            continue
        edges += _death_drops(value, resolver, source_id, allow_list=False)
        break
    return edges


def extract_farming_edges(record: Record, resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    return _group_refs(record.array_at(*F.ACCEPTED_GROUPS), resolver, source_id)


def extract_projectile_edges(record: Record, resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    edges = []
    for path, trigger in (("HitParticles", "hit"), ("DeathParticles", "death")):
        system_id = record.sub(path).str_at(*F.SYSTEM_ID)
        if system_id:
            edges += _particles(source_id, [system_id], trigger)
    return edges


def extract_weather_edges(record: Record, resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    system_id = record.sub("Particle").str_at(*F.SYSTEM_ID)
    return _particles(source_id, [system_id], "ambient") if system_id else []


def extract_interaction_edges(record: Record, resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    edges = []
    for key in F.EFFECTS:
        for el in record.array_at(key) or []:
            if isinstance(el, dict):
                edges += IdentifierResolver.virtual(
                    "effect", Record(el).str_at(*F.EFFECT_ID), source_id, EdgeType.APPLIES_EFFECT
                )

    action = record.str_at("Action", "action")
    if action and "effect" in action.lower():
        edges += IdentifierResolver.virtual(
            "effect", record.str_at(*F.EFFECT_ID), source_id, EdgeType.APPLIES_EFFECT
        )
    return edges


def extract_zone_edges(record: Record, resolver: IdentifierResolver, source_id: str) -> List[EdgeRow]:
    return IdentifierResolver.virtual(
        "worldgen", record.str_at(*F.NOISE_MASK_FILE), source_id, EdgeType.REFERENCES_WORLDGEN
    )


EXTRACTORS: Dict[str, Extractor] = {
    "item": extract_item_edges,
    "recipe": extract_recipe_edges,
    "drop": extract_drop_edges,
    "npc": extract_npc_edges,
    "shop": extract_shop_edges,
    "npc_group": extract_group_edges,
    "objective": extract_objective_edges,
    "entity": extract_entity_edges,
    "block": extract_block_edges,
    "farming": extract_farming_edges,
    "projectile": extract_projectile_edges,
    "weather": extract_weather_edges,
    "interaction": extract_interaction_edges,
    "zone": extract_zone_edges,
}


def extract_related_edges(
    related_ids: Iterable[str], resolver: IdentifierResolver, source_id: str
) -> List[EdgeRow]:
    """Generic RELATES_TO links for identifiers listed by the chunk source."""
    edges = []
    for related in related_ids or []:
        edges += resolver.resolve_stem(related, source_id, EdgeType.RELATES_TO)
    return edges


def extract_gamedata_edges(
    data_type: str, record: Record, resolver: IdentifierResolver, source_id: str
) -> List[EdgeRow]:
    """Dispatch to the extractor for ``data_type``; unknown types produce nothing."""
    extractor = EXTRACTORS.get(data_type)
    if extractor is None:
        return []
    return extractor(record, resolver, source_id)
