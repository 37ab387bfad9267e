"""Rebuild one linear branch from messages linked by ``parentUuid``.

Editing or retrying a prompt in Claude Code appends a new message whose parent
already has a child, so a transcript is really a tree. The tree is kept as an
arena keyed by uuid; nodes reference their parent by id only.
"""

from dataclasses import dataclass, field

from .core import ConversationMessage


@dataclass
class MessageTree:
    """Arena of messages: uuid lookup, ordered children per parent, and roots."""

    nodes: dict[str, ConversationMessage] = field(default_factory=dict)
    children: dict[str, list[ConversationMessage]] = field(default_factory=dict)
    roots: list[ConversationMessage] = field(default_factory=list)

    @classmethod
    def build(cls, messages: list[ConversationMessage]) -> "MessageTree":
        tree = cls()
        for msg in messages:
            if msg.uuid:
                tree.nodes[msg.uuid] = msg
            if msg.parent_uuid:
                tree.children.setdefault(msg.parent_uuid, []).append(msg)
            else:
                tree.roots.append(msg)
        return tree

    def children_of(self, msg: ConversationMessage) -> list[ConversationMessage]:
        if not msg.uuid:
            return []
        return self.children.get(msg.uuid, [])

    def fork_points(self) -> dict[str, list[ConversationMessage]]:
        return {parent: kids for parent, kids in self.children.items() if len(kids) > 1}


def build_branch(
    messages: list[ConversationMessage],
    choices: dict[str, str] | None = None,
) -> list[ConversationMessage]:
    """Walk from the first root down to a leaf.

    At each node the child named in ``choices[parent_uuid]`` is taken; without
    a recorded choice (or when it names no known child) the last-listed child,
    i.e. the most recently appended branch, is taken. When no message is a
    root the input is returned as-is.
    """
    if not messages:
        return []

    tree = MessageTree.build(messages)
    if not tree.roots:
        return list(messages)

    choices = choices or {}
    chain: list[ConversationMessage] = []
    seen: set[int] = set()
    current: ConversationMessage | None = tree.roots[0]

    while current is not None and id(current) not in seen:
        seen.add(id(current))
        chain.append(current)
        kids = tree.children_of(current)
        if not kids:
            break
        chosen = choices.get(current.uuid or "")
        current = next((c for c in kids if chosen and c.uuid == chosen), kids[-1])

    return chain


def fork_points(messages: list[ConversationMessage]) -> dict[str, list[ConversationMessage]]:
    """Map each parent uuid with more than one child to its children, in file order."""
    return MessageTree.build(messages).fork_points()
