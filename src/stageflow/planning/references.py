"""Template reference graph: which stage templates ``use:`` which others."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence

PIPELINE_ROOT = "<pipeline>"


class ReferenceGraph:
    """Directed graph ``referrer -> template`` with deterministic cycle detection."""

    __slots__ = ("_edges",)

    def __init__(self, edges: Iterable[tuple[str, str]] | None = None) -> None:
        self._edges: dict[str, set[str]] = {}
        for referrer, template in edges or ():
            self.add_reference(referrer, template)

    @property
    def nodes(self) -> tuple[str, ...]:
        return tuple(sorted(self._edges))

    def add_node(self, name: str) -> None:
        if not name:
            raise ValueError("reference node name must be non-empty")
        self._edges.setdefault(name, set())

    def add_reference(self, referrer: str, template: str) -> None:
        self.add_node(referrer)
        self.add_node(template)
        self._edges[referrer].add(template)

    def references(self, name: str) -> tuple[str, ...]:
        return tuple(sorted(self._edges.get(name, ())))

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """
        Detect reference cycles with an iterative DFS and a visiting set.

        Returns closed, rotation-canonical paths such as ``("a", "b", "a")``.
        """
        state: dict[str, int] = {}
        stack: list[str] = []
        stack_index: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        for start in self.nodes:
            if state.get(start, 0) != 0:
                continue

            state[start] = 1
            stack_index[start] = len(stack)
            stack.append(start)
            frames: list[tuple[str, Iterator[str]]] = [(start, iter(self.references(start)))]

            while frames:
                node, child_iter = frames[-1]
                child = next(child_iter, None)
                if child is None:
                    frames.pop()
                    state[node] = 2
                    stack.pop()
                    del stack_index[node]
                    continue

                child_state = state.get(child, 0)
                if child_state == 0:
                    state[child] = 1
                    stack_index[child] = len(stack)
                    stack.append(child)
                    frames.append((child, iter(self.references(child))))
                elif child_state == 1:
                    cycle = (*stack[stack_index[child] :], child)
                    cycles[_canonicalize_cycle(cycle)] = None

        return tuple(sorted(cycles))


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    core = tuple(cycle[:-1])
    if len(core) == 1:
        return (core[0], core[0])
    best = min(core[offset:] + core[:offset] for offset in range(len(core)))
    return (*best, best[0])


__all__ = ["PIPELINE_ROOT", "ReferenceGraph"]
