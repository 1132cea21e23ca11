"""Orders the packages of a run and pulls in unbuilt sibling dependencies."""

from collections import deque

from attrs import define, field
from pyvider.telemetry import logger

from ..context import BuildContext
from ..models import (
    BuildFlavor,
    DependencyRef,
    PackageRef,
    PackageSource,
    PlainName,
    ProductRef,
)


@define(frozen=True, slots=True)
class BuildOrder:
    packages: tuple[str, ...]
    # Unplaced package -> its unplaced dependencies, when a cycle was found.
    cycle: dict[str, tuple[str, ...]] = field(factory=dict)

    @property
    def has_cycle(self) -> bool:
        return bool(self.cycle)


class DependencyResolver:
    def __init__(self, context: BuildContext) -> None:
        self.context = context

    def canonicalize(self, ref: DependencyRef) -> DependencyRef:
        """Turns a bare name into a ProductRef or PackageRef when it names one."""
        if not isinstance(ref, PlainName):
            return ref
        if self.context.cache.is_cache_dependency(ref.name):
            return ref
        owner = self.context.owner_of_product(ref.name)
        if owner is not None:
            return ProductRef(owner.name, ref.name)
        if ref.name in self.context.packages:
            return PackageRef(ref.name)
        return ref

    def external_refs(self, package: PackageSource) -> list[DependencyRef]:
        refs: dict[DependencyRef, None] = {}
        for product in package.products:
            for ref in product.external_dependencies:
                refs.setdefault(self.canonicalize(ref), None)
        return list(refs)

    def package_dependencies(self, package: PackageSource) -> list[str]:
        names: dict[str, None] = {}
        for ref in self.external_refs(package):
            if isinstance(ref, (ProductRef, PackageRef)) and ref.package != package.name:
                names.setdefault(ref.package, None)
        return list(names)

    def _is_built(self, ref: ProductRef) -> bool:
        return all(
            self.context.framework_path(ref.package, ref.product, flavor).exists()
            for flavor in BuildFlavor
        )

    def expand(self, names: list[str]) -> list[str]:
        """
        Adds the owning package of every `package/Product` dependency whose debug
        or release binary is missing, until nothing more is added.
        """
        included = list(dict.fromkeys(names))
        changed = True
        while changed:
            changed = False
            for name in list(included):
                package = self.context.package(name)
                for ref in self.external_refs(package):
                    if not isinstance(ref, ProductRef):
                        continue
                    if ref.package in included or ref.package == name:
                        continue
                    if self.context.cache.is_cache_dependency(ref.product):
                        continue
                    if ref.package not in self.context.packages:
                        logger.warning(
                            f"{name} depends on {ref}, but package {ref.package} "
                            "was not found; it will not be auto-added."
                        )
                        continue
                    if self._is_built(ref):
                        continue
                    logger.info(f"Auto-adding {ref.package} (required by {name})")
                    included.append(ref.package)
                    changed = True
        return included

    def sort(self, names: list[str]) -> BuildOrder:
        """Kahn's algorithm over the in-set dependency edges; ties keep input order."""
        unique = list(dict.fromkeys(names))
        in_set = set(unique)
        dependencies = {
            name: [
                dep
                for dep in self.package_dependencies(self.context.package(name))
                if dep in in_set
            ]
            for name in unique
        }

        in_degree = {name: len(dependencies[name]) for name in unique}
        dependents: dict[str, list[str]] = {name: [] for name in unique}
        for name in unique:
            for dep in dependencies[name]:
                dependents[dep].append(name)

        queue = deque(name for name in unique if in_degree[name] == 0)
        order: list[str] = []
        while queue:
            name = queue.popleft()
            order.append(name)
            for dependent in dependents[name]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(order) == len(unique):
            if order != unique:
                logger.info(f"Build order: {', '.join(order)}")
            return BuildOrder(tuple(order))

        placed = set(order)
        unplaced = [name for name in unique if name not in placed]
        cycle = {
            name: tuple(dep for dep in dependencies[name] if dep not in placed)
            for name in unplaced
        }
        logger.warning(
            f"Circular dependency detected between: {', '.join(unplaced)}. "
            "Falling back to the requested order."
        )
        for name, deps in cycle.items():
            logger.warning(f"  {name} -> {', '.join(deps)}")
        return BuildOrder(tuple(unique), cycle)

    def resolve(self, requested: list[str]) -> BuildOrder:
        names = list(requested) or sorted(self.context.packages)
        for name in names:
            self.context.package(name)
        return self.sort(self.expand(names))
