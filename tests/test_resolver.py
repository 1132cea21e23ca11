"""Tests for build ordering and auto-expansion of unbuilt dependencies."""

from typing import Callable

import pytest

from conftest import PackageFactory, objc_product
from precompile.builder.context import BuildContext
from precompile.builder.exceptions import ConfigurationError
from precompile.builder.models import BuildFlavor, PackageRef, PlainName, ProductRef
from precompile.builder.packaging.resolver import DependencyResolver


@pytest.fixture
def chain(make_package: PackageFactory) -> None:
    """core <- image <- ui; `solo` has no dependencies."""
    make_package("core", [objc_product("Core")])
    make_package("image", [objc_product("Image", external=["core/Core"])])
    make_package("ui", [objc_product("UI", external=["image/Image", "React"])])
    make_package("solo", [objc_product("Solo")])


def test_canonicalize_bare_names(chain: None, context: BuildContext) -> None:
    resolver = DependencyResolver(context)
    assert resolver.canonicalize(PlainName("Core")) == ProductRef("core", "Core")
    assert resolver.canonicalize(PlainName("image")) == PackageRef("image")
    assert resolver.canonicalize(PlainName("React")) == PlainName("React")
    assert resolver.canonicalize(PlainName("Unknown")) == PlainName("Unknown")


def test_sort_is_topological(chain: None, context: BuildContext) -> None:
    """TDD Contract: every package comes after the packages it depends on."""
    order = DependencyResolver(context).sort(["ui", "solo", "image", "core"])
    assert not order.has_cycle
    packages = list(order.packages)
    assert packages.index("core") < packages.index("image") < packages.index("ui")
    assert sorted(packages) == ["core", "image", "solo", "ui"]


def test_sort_keeps_input_order_for_independent_packages(
    chain: None, context: BuildContext
) -> None:
    assert DependencyResolver(context).sort(["solo", "core"]).packages == ("solo", "core")


def test_sort_deduplicates(chain: None, context: BuildContext) -> None:
    assert DependencyResolver(context).sort(["core", "core", "solo"]).packages == (
        "core",
        "solo",
    )


def test_cycle_falls_back_to_input_order(
    make_package: PackageFactory, context: BuildContext
) -> None:
    make_package("c", [objc_product("C", external=["d/D"])])
    make_package("d", [objc_product("D", external=["c/C"])])

    order = DependencyResolver(context).sort(["c", "d"])

    assert order.has_cycle
    assert order.packages == ("c", "d")
    assert order.cycle == {"c": ("d",), "d": ("c",)}


def test_cycle_reports_only_unplaced_packages(
    make_package: PackageFactory, context: BuildContext
) -> None:
    make_package("base", [objc_product("Base")])
    make_package("c", [objc_product("C", external=["d/D", "base/Base"])])
    make_package("d", [objc_product("D", external=["c/C"])])

    order = DependencyResolver(context).sort(["c", "d", "base"])

    assert order.packages == ("c", "d", "base")
    assert set(order.cycle) == {"c", "d"}


def test_expand_adds_unbuilt_dependencies(chain: None, context: BuildContext) -> None:
    assert DependencyResolver(context).expand(["ui"]) == ["ui", "image", "core"]


def test_expand_skips_built_dependencies(
    chain: None, context: BuildContext, mark_built: Callable[..., None]
) -> None:
    mark_built("image", "Image")
    assert DependencyResolver(context).expand(["ui"]) == ["ui"]


def test_expand_needs_both_flavors(
    chain: None, context: BuildContext, mark_built: Callable[..., None]
) -> None:
    mark_built("image", "Image", flavors=(BuildFlavor.DEBUG,))
    assert "image" in DependencyResolver(context).expand(["ui"])


def test_expand_reaches_a_fixed_point(chain: None, context: BuildContext) -> None:
    """TDD Contract: expanding an already expanded set adds nothing."""
    resolver = DependencyResolver(context)
    expanded = resolver.expand(["ui"])
    assert resolver.expand(expanded) == expanded


def test_expand_ignores_unknown_packages(
    make_package: PackageFactory, context: BuildContext
) -> None:
    make_package("lonely", [objc_product("Lonely", external=["ghost/Ghost"])])
    assert DependencyResolver(context).expand(["lonely"]) == ["lonely"]


def test_resolve_everything_when_nothing_requested(chain: None, context: BuildContext) -> None:
    order = DependencyResolver(context).resolve([])
    assert sorted(order.packages) == ["core", "image", "solo", "ui"]
    assert order.packages.index("core") < order.packages.index("image")


def test_resolve_rejects_unknown_request(chain: None, context: BuildContext) -> None:
    with pytest.raises(ConfigurationError, match="Unknown package 'nope'"):
        DependencyResolver(context).resolve(["nope"])
