"""
Typed access to game data records.

Game data files drift in shape between versions: the same fact shows up under
``ItemId``, ``item`` or ``id`` depending on the file's age. A ``Record`` reads
a field through an explicit ordered list of path alternatives and the first
path that yields a usable value wins.
"""

import json
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..knowledge_exceptions import ChunkParseError


def _drop_trailing_comma(out: List[str]) -> None:
    i = len(out) - 1
    while i >= 0 and out[i].isspace():
        i -= 1
    if i >= 0 and out[i] == ",":
        del out[i]


def strip_jsonc(text: str) -> str:
    """Remove comments and trailing commas outside of string literals."""
    out: List[str] = []
    i = 0
    n = len(text)
    in_string = False
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
        else:
            if ch in "}]":
                _drop_trailing_comma(out)
            out.append(ch)
            i += 1
    return "".join(out)


def parse_jsonc(text: str, file_path: Optional[str] = None) -> Any:
    """
    Parse JSON that may contain comments and trailing commas.

    Raises:
        ChunkParseError: if the text is not valid JSON after cleanup
    """
    cleaned = strip_jsonc(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ChunkParseError(f"Invalid JSON: {e}", file_path=file_path) from e


class FieldAliases:
    """Ordered field-path alternatives, first match wins."""
    ITEM_ID = ("ItemId", "item", "id")
    ID = ("Id", "id")
    SYSTEM_ID = ("SystemId", "systemId")
    RECIPE_INPUTS = ("Input", "inputs", "ingredients")
    RESOURCE_TYPE = ("ResourceTypeId",)
    BENCH = ("BenchRequirement",)
    BENCH_LEGACY = ("station",)
    PRIMARY_OUTPUT = ("PrimaryOutput.ItemId", "PrimaryOutput.item", "PrimaryOutput.id")
    SECONDARY_OUTPUTS = ("Output", "outputs")
    LEGACY_RESULT = ("result.ItemId", "result.item", "result.id")
    DROP_CONTAINER_CHILDREN = ("Containers", "Multiple", "Choice", "Single", "Items", "Entries", "Container")
    DROP_FLAT_LISTS = ("Drops", "drops", "entries", "items", "loot")
    NPC_DROPS = ("Drops", "drops")
    BLOCK_DROPS = ("Drops", "drops", "lootTable")
    DROP_LIST = ("DropList",)
    TARGET_GROUPS = ("TargetGroups",)
    ACCEPTED_GROUPS = ("AcceptedNpcGroups",)
    GROUP_MEMBERS = ("Members", "members")
    GROUP_MEMBER_ID = ("NPC", "npc", "id")
    GROUP_NPCS = ("NPCs", "npcs")
    TRADE_SLOTS = ("TradeSlots",)
    TRADE_OUTPUT_ITEM = ("Output.ItemId", "Output.item", "Output.id")
    TRADE_COST = ("Input", "Cost", "Price")
    QUANTITY = ("Quantity", "quantity", "Amount", "amount", "count")
    LEGACY_SHOP_ITEMS = ("Items", "items")
    TASK_SETS = ("TaskSets", "taskSets")
    TASKS = ("Tasks", "tasks")
    NPC_GROUP_ID = ("NPCGroupId", "npcGroupId", "GroupId", "groupId")
    EFFECTS = ("Effects", "effects")
    EFFECT_ID = ("EffectId", "effectId")
    NOISE_MASK_FILE = ("NoiseMask.File", "NoiseMask.file")


class Record:
    """
    Read-only view over one parsed JSON object.

    Non-object values are wrapped as an empty record so that lookups on
    malformed input simply find nothing.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    ::: This is stateless.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Any):
        self._data: Dict[str, Any] = data if isinstance(data, dict) else {}

    @classmethod
    def parse(cls, text: str, file_path: Optional[str] = None) -> "Record":
        return cls(parse_jsonc(text, file_path))

    @property
    def data(self) -> Dict[str, Any]:
        return self._data

    def _lookup(self, path: str) -> Any:
        node: Any = self._data
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def value_at(self, *paths: str) -> Any:
        """First non-null value among ``paths``."""
        for path in paths:
            value = self._lookup(path)
            if value is not None:
                return value
        return None

    def str_at(self, *paths: str) -> Optional[str]:
        """First non-blank string value among ``paths``."""
        for path in paths:
            value = self._lookup(path)
            if isinstance(value, str) and value.strip():
                return value
        return None

    def object_at(self, *paths: str) -> Optional["Record"]:
        for path in paths:
            value = self._lookup(path)
            if isinstance(value, dict):
                return Record(value)
        return None

    def array_at(self, *paths: str) -> Optional[List[Any]]:
        for path in paths:
            value = self._lookup(path)
            if isinstance(value, list):
                return value
        return None

    def sub(self, path: str) -> "Record":
        """Child record at ``path``; empty when absent."""
        return Record(self._lookup(path))

    def items(self) -> Iterator[Tuple[str, Any]]:
        return iter(self._data.items())

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __bool__(self) -> bool:
        return bool(self._data)

    def __repr__(self) -> str:
        return f"Record(keys={sorted(self._data)[:8]})"


def string_or_id(value: Any, id_keys: Tuple[str, ...] = FieldAliases.ID) -> Optional[str]:
    """A bare string, or the first id field of an object."""
    if isinstance(value, str):
        return value if value.strip() else None
    if isinstance(value, dict):
        return Record(value).str_at(*id_keys)
    return None


def number_at(record: Record, *paths: str) -> Optional[float]:
    value = record.value_at(*paths)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    return None
