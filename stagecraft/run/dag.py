"""Dependency graph over build stages."""

from collections import defaultdict, deque

from stagecraft.exceptions import ManifestError, UnknownStage
from stagecraft.run.stage import Stage


class DAG:
    """Directed acyclic graph of stage dependencies.

    A stage depends on another when it starts ``from: stage:<name>`` or
    copies out of it with ``copy_from``.
    """

    def __init__(self, stages: list[Stage]):
        self.stages = {stage.name: stage for stage in stages}
        self.order = {stage.name: i for i, stage in enumerate(stages)}
        self.graph: dict[str, set[str]] = defaultdict(set)
        self.reverse_graph: dict[str, set[str]] = defaultdict(set)
        self._build_graph()

    def _build_graph(self):
        for stage_name, stage in self.stages.items():
            for producer in stage.get_stage_dependencies():
                if producer not in self.stages:
                    raise UnknownStage(producer, f"was never declared (referenced by '{stage_name}')")
                # Edge: producer -> consumer
                self.graph[producer].add(stage_name)
                self.reverse_graph[stage_name].add(producer)

    def get_dependencies(self, stage_name: str) -> set[str]:
        """Get all stages that this stage depends on."""
        return self.reverse_graph.get(stage_name, set())

    def get_dependents(self, stage_name: str) -> set[str]:
        """Get all stages that depend on this stage."""
        return self.graph.get(stage_name, set())

    def check_cycles(self) -> list[str] | None:
        """Check for cycles in the dependency graph.

        Returns:
            None if no cycles, otherwise a list of stage names forming a cycle
        """
        visited = set()
        rec_stack = set()

        def visit(node: str, path: list[str]) -> list[str] | None:
            if node in rec_stack:
                cycle_start = path.index(node)
                return path[cycle_start:] + [node]

            if node in visited:
                return None

            visited.add(node)
            rec_stack.add(node)
            path.append(node)

            for neighbor in sorted(self.graph.get(node, set()), key=self.order.get):
                cycle = visit(neighbor, path.copy())
                if cycle:
                    return cycle

            rec_stack.remove(node)
            return None

        for stage_name in self.stages:
            if stage_name not in visited:
                cycle = visit(stage_name, [])
                if cycle:
                    return cycle

        return None

    def topological_sort(self) -> list[list[str]]:
        """Group stages into levels; each level only depends on earlier ones.

        Within a level, stages keep their manifest order.

        Raises:
            ManifestError: If graph contains cycles
        """
        cycle = self.check_cycles()
        if cycle:
            raise ManifestError(f"circular stage dependency: {' -> '.join(cycle)}")

        in_degree = {stage: len(self.get_dependencies(stage)) for stage in self.stages}
        levels = []
        queue = deque([stage for stage, degree in in_degree.items() if degree == 0])

        while queue:
            current_level = sorted(queue, key=self.order.get)
            levels.append(current_level)
            queue.clear()

            for stage_name in current_level:
                for dependent in self.get_dependents(stage_name):
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        queue.append(dependent)

        if sum(len(level) for level in levels) != len(self.stages):
            raise ManifestError("failed to order all stages - possible cycle")

        return levels

    def execution_order(self) -> list[Stage]:
        """Flatten the levels into the sequential order stages run in."""
        return [self.stages[name] for level in self.topological_sort() for name in level]

    def filter_to_targets(self, target_stages: list[str]) -> "DAG":
        """Create a new DAG containing only target stages and their dependencies.

        Raises:
            UnknownStage: If any target stage doesn't exist
        """
        missing = set(target_stages) - set(self.stages.keys())
        if missing:
            raise UnknownStage(sorted(missing)[0])

        needed_stages = set()
        to_process = list(target_stages)

        while to_process:
            stage_name = to_process.pop()
            if stage_name in needed_stages:
                continue
            needed_stages.add(stage_name)
            to_process.extend(self.get_dependencies(stage_name))

        # Keep manifest order for stable level ordering
        filtered_stage_objs = [
            stage for name, stage in self.stages.items() if name in needed_stages
        ]
        return DAG(filtered_stage_objs)
