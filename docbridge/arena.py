"""Node arena and tree walker shared by the document handlers.

Segments never hold live references into a parsed tree. Each extracted text
node is stored once in a :class:`NodeArena` and a segment only remembers the
integer index of its slot. Handlers that must swap node objects during
reinsertion (BeautifulSoup strings are immutable) rebind the slot instead of
chasing stale references.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Iterable, Iterator, List, Optional, Set, Tuple


class NodeKind(Enum):
    """Closed set of node shapes the walker understands."""

    TEXT = auto()
    ELEMENT = auto()
    # Leaf without translatable text: void elements, comments, processing
    # instructions, raw script/style bodies.
    SELF_CLOSING = auto()


Classifier = Callable[[Any], NodeKind]
ChildrenOf = Callable[[Any], Iterable[Any]]


def walk(root: Any, classify: Classifier, children_of: ChildrenOf) -> Iterator[Any]:
    """Yield text nodes depth-first in document order."""

    stack: List[Any] = [root]
    while stack:
        node = stack.pop()
        kind = classify(node)
        if kind is NodeKind.TEXT:
            yield node
        elif kind is NodeKind.ELEMENT:
            stack.extend(reversed(list(children_of(node))))


def split_padding(text: str) -> Tuple[str, str, str]:
    """Split text into leading whitespace, core text, and trailing whitespace."""

    core = text.strip()
    if not core:
        return text, "", ""
    start = text.index(core)
    return text[:start], core, text[start + len(core):]


@dataclass
class TextSlot:
    """Arena entry for one extracted text node."""

    node: Any
    part: str
    leading: str
    core: str
    trailing: str
    current: Optional[str] = None

    @property
    def original(self) -> str:
        return f"{self.leading}{self.core}{self.trailing}"

    @property
    def changed(self) -> bool:
        return self.current is not None and self.current != self.core

    def render(self, text: str) -> str:
        return f"{self.leading}{text}{self.trailing}"


class NodeArena:
    """Owns every text slot of one pipeline run."""

    def __init__(self) -> None:
        self._slots: List[TextSlot] = []

    def __len__(self) -> int:
        return len(self._slots)

    def __getitem__(self, index: int) -> TextSlot:
        return self._slots[index]

    def __iter__(self) -> Iterator[TextSlot]:
        return iter(self._slots)

    def add(self, node: Any, text: str, *, part: str = "") -> int:
        """Store a text node and return its origin reference."""

        leading, core, trailing = split_padding(text)
        self._slots.append(
            TextSlot(node=node, part=part, leading=leading, core=core, trailing=trailing)
        )
        return len(self._slots) - 1

    def assign(self, index: int, text: str) -> str:
        """Record new core text for a slot and return the padded replacement."""

        slot = self._slots[index]
        slot.current = text
        return slot.render(text)

    def rebind(self, index: int, node: Any) -> None:
        """Point a slot at the node that replaced its original."""

        self._slots[index].node = node

    def changed_parts(self) -> Set[str]:
        return {slot.part for slot in self._slots if slot.changed}
