"""Render a labeled tree with unicode box-drawing characters.

Nodes may be shared: the same `Tree` object can be attached as a child of
several parents and is rendered under each of them.
"""

from __future__ import annotations

from dataclasses import dataclass, field

EMPTY = "  "
EDGE = "└─"
PIPE = "│ "
BRANCH = "├─"


@dataclass(eq=False)
class Tree:
    """A tree node with a (possibly multi-line) label."""

    label: list[str]
    children: list[Tree] = field(default_factory=list)

    def render(self) -> str:
        lines: list[str] = []
        _write_tree_element(self, [], lines)
        return "".join(lines)

    def __str__(self) -> str:
        return self.render()


def _write_tree_element(tree: Tree, level: list[int], out: list[str]) -> None:
    # `level` holds, for each ancestor depth, how many siblings were left to
    # draw (including this one) when we descended.
    maxpos = len(level)
    first_line = ""
    second_line = ""
    for pos, remaining in enumerate(level):
        prefix = "" if pos == 0 else " "
        last_row = pos == maxpos - 1
        first_line += prefix
        second_line += prefix
        if remaining == 1:
            first_line += EDGE if last_row else EMPTY
            second_line += EMPTY
        else:
            first_line += BRANCH if last_row else PIPE
            second_line += PIPE

    prefix = "" if maxpos == 0 else " "
    for i, line in enumerate(tree.label):
        if i == 0:
            out.append(f"{first_line}{prefix}{line}\n")
        else:
            out.append(f"{second_line}{prefix}{line}\n")

    children_remaining = len(tree.children)
    for child in tree.children:
        level.append(children_remaining)
        children_remaining -= 1
        _write_tree_element(child, level, out)
        level.pop()
