"""
Tests for the Skill Catalog.

Covers:
- parse_skill_document: frontmatter, defaults, phase inference, errors
- versions: parse_version, matches, pick_latest
- DependencyGraph: cycle detection, topological order, missing deps
- Catalog: lookup by id/constraint, listing and search, VersionConflict
- load_catalog / discover_skill_sources: malformed files are skipped
- CatalogRegistry: snapshots, failed reload keeps the previous snapshot
"""

from pathlib import Path

import pytest

from loopwork.catalog import (
    Catalog,
    CatalogRegistry,
    DependencyGraph,
    Phase,
    SkillCategory,
    SkillDescriptor,
    SkillSource,
    discover_skill_sources,
    infer_phase,
    load_catalog,
    parse_skill_document,
)
from loopwork.catalog.versions import matches, parse_version, pick_latest
from loopwork.errors import CycleError, ParseError, SkillNotFound, VersionConflict


def _doc(name: str, **header) -> str:
    lines = ["---", f"name: {name}"]
    for key, value in header.items():
        lines.append(f"{key}: {value}")
    lines.extend(["---", f"# {name}", "Body text."])
    return "\n".join(lines)


def _skill(skill_id: str, version: str = "1.0.0", depends_on=(), phase=Phase.IMPLEMENT, **kw) -> SkillDescriptor:
    return SkillDescriptor(
        id=skill_id,
        version=version,
        phase=phase,
        depends_on=frozenset(depends_on),
        **kw,
    )


# ── Tests: parse_skill_document ───────────────────────────────────────


class TestParseSkillDocument:
    def test_full_header(self):
        text = _doc(
            "champion-scoring",
            version="1.2.0",
            phase="VALIDATE",
            category="specialized",
            depends_on="[stakeholder-map]",
            deliverables="[championStrength]",
            tags="[sales, scoring]",
        )
        skill = parse_skill_document(text, origin="skills/champion-scoring/SKILL.md")
        assert skill.id == "champion-scoring"
        assert skill.version == "1.2.0"
        assert skill.phase == Phase.VALIDATE
        assert skill.phase_source == "declared"
        assert skill.category == SkillCategory.SPECIALIZED
        assert skill.depends_on == frozenset({"stakeholder-map"})
        assert skill.deliverables == ("championStrength",)
        assert skill.tags == ("sales", "scoring")
        assert skill.body.startswith("# champion-scoring")

    def test_defaults(self):
        skill = parse_skill_document(_doc("bare", phase="init"))
        assert skill.version == "1.0.0"
        assert skill.category == SkillCategory.CUSTOM
        assert skill.depends_on == frozenset()
        assert skill.phase == Phase.INIT

    def test_default_name_from_directory(self):
        text = "---\nphase: TEST\n---\nbody"
        skill = parse_skill_document(text, default_name="unit-tests")
        assert skill.id == "unit-tests"

    def test_camel_case_depends_on(self):
        text = "---\nname: b\nphase: TEST\ndependsOn: [a]\n---\n"
        assert parse_skill_document(text).depends_on == frozenset({"a"})

    def test_single_string_dependency_coerced(self):
        skill = parse_skill_document(_doc("b", phase="TEST", depends_on="a"))
        assert skill.depends_on == frozenset({"a"})

    def test_inferred_phase(self):
        text = "---\nname: docs\ndescription: Writes the README\n---\n"
        skill = parse_skill_document(text)
        assert skill.phase == Phase.DOCUMENT
        assert skill.phase_source == "inferred"
        assert not skill.phase_ambiguous

    def test_ambiguous_inference_flagged(self):
        text = "---\nname: mixed\n---\nDeploy after the code review and release."
        skill = parse_skill_document(text)
        assert skill.phase_source == "inferred"
        assert len(skill.phase_candidates) > 1
        assert skill.phase_ambiguous

    def test_no_inference_is_unknown(self):
        skill = parse_skill_document("---\nname: mystery\n---\nNothing to see.")
        assert skill.phase is None
        assert skill.phase_source == "unknown"
        assert skill.phase_ambiguous

    def test_no_frontmatter_uses_default_name(self):
        skill = parse_skill_document("Just a body about unit test coverage", default_name="t")
        assert skill.id == "t"
        assert skill.phase == Phase.TEST

    def test_invalid_yaml_raises(self):
        with pytest.raises(ParseError, match="invalid YAML"):
            parse_skill_document("---\nname: [unclosed\n---\n", origin="x.md")

    def test_header_not_mapping_raises(self):
        with pytest.raises(ParseError, match="mapping"):
            parse_skill_document("---\n- a\n- b\n---\n")

    def test_invalid_phase_raises(self):
        with pytest.raises(ParseError, match="phase"):
            parse_skill_document(_doc("x", phase="LAUNCH"))

    def test_invalid_version_raises(self):
        with pytest.raises(ParseError, match="version"):
            parse_skill_document(_doc("x", phase="TEST", version="banana"))

    def test_missing_name_raises(self):
        with pytest.raises(ParseError, match="no name"):
            parse_skill_document("---\nphase: TEST\n---\n")

    def test_invalid_id_raises(self):
        with pytest.raises(ParseError, match="invalid skill id"):
            parse_skill_document("---\nname: 'has spaces'\nphase: TEST\n---\n")

    def test_error_carries_origin(self):
        with pytest.raises(ParseError) as info:
            parse_skill_document(_doc("x", phase="NOPE"), origin="skills/x/SKILL.md")
        assert info.value.origin == "skills/x/SKILL.md"
        assert "skills/x/SKILL.md" in str(info.value)


class TestInferPhase:
    def test_first_match_wins(self):
        result = infer_phase("Deploy the release after code review")
        assert result.phase == Phase.VERIFY
        assert Phase.SHIP in result.candidates
        assert result.ambiguous

    def test_single_match(self):
        result = infer_phase("Improve unit test coverage")
        assert result.phase == Phase.TEST
        assert not result.ambiguous

    def test_no_match(self):
        result = infer_phase("lorem ipsum")
        assert result.phase is None
        assert result.candidates == ()


# ── Tests: versions ───────────────────────────────────────────────────


class TestVersions:
    def test_parse_partial(self):
        assert parse_version("1") == (1, 0, 0)
        assert parse_version("v2.3") == (2, 3, 0)
        assert parse_version("1.2.3-beta") == (1, 2, 3)

    def test_parse_invalid(self):
        with pytest.raises(ValueError):
            parse_version("one")

    @pytest.mark.parametrize(
        "version,constraint,expected",
        [
            ("1.2.3", None, True),
            ("1.2.3", "*", True),
            ("1.2.3", "1.2.3", True),
            ("1.2.4", "=1.2.3", False),
            ("1.9.0", "^1.2.0", True),
            ("2.0.0", "^1.2.0", False),
            ("0.2.5", "^0.2.0", True),
            ("0.3.0", "^0.2.0", False),
            ("1.2.9", "~1.2.0", True),
            ("1.3.0", "~1.2.0", False),
            ("2.0.0", ">=1.5", True),
            ("1.0.0", ">1.0.0", False),
            ("1.0.0", "<2", True),
            ("2.0.0", "<=2.0.0", True),
        ],
    )
    def test_matches(self, version, constraint, expected):
        assert matches(version, constraint) is expected

    def test_pick_latest(self):
        versions = ["1.0.0", "1.10.0", "1.2.0", "2.0.0"]
        assert pick_latest(versions) == "2.0.0"
        assert pick_latest(versions, "^1.0") == "1.10.0"
        assert pick_latest(versions, ">3") is None


# ── Tests: DependencyGraph ────────────────────────────────────────────


class TestDependencyGraph:
    def test_topological_order_dependencies_first(self):
        graph = DependencyGraph({"c": {"b"}, "b": {"a"}, "a": set()})
        order = graph.topological_order(["c", "b", "a"])
        assert order.index("a") < order.index("b") < order.index("c")

    def test_input_order_breaks_ties(self):
        graph = DependencyGraph({"x": set(), "y": set(), "z": set()})
        assert graph.topological_order(["z", "x", "y"]) == ["z", "x", "y"]

    def test_external_edges_ignored_by_default(self):
        graph = DependencyGraph({"a": set(), "b": {"a"}, "c": {"b"}})
        assert graph.topological_order(["c"]) == ["c"]

    def test_include_dependencies(self):
        graph = DependencyGraph({"a": set(), "b": {"a"}, "c": {"b"}})
        assert graph.topological_order(["c"], include_dependencies=True) == ["a", "b", "c"]

    def test_find_cycle_returns_path(self):
        graph = DependencyGraph({"a": {"b"}, "b": {"c"}, "c": {"a"}})
        cycle = graph.find_cycle()
        assert cycle is not None
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_self_loop_is_cycle(self):
        graph = DependencyGraph({"a": {"a"}})
        with pytest.raises(CycleError) as info:
            graph.check_acyclic()
        assert info.value.cycle == ["a", "a"]

    def test_acyclic(self):
        graph = DependencyGraph({"a": set(), "b": {"a"}, "c": {"a", "b"}})
        assert graph.find_cycle() is None
        graph.check_acyclic()

    def test_missing_dependencies_recorded(self):
        graph = DependencyGraph({"a": {"ghost"}})
        assert graph.missing == {"a": frozenset({"ghost"})}
        assert graph.dependencies("a") == []

    def test_dependents_and_transitive(self):
        graph = DependencyGraph({"a": set(), "b": {"a"}, "c": {"b"}})
        assert graph.dependents("a") == ["b"]
        assert graph.transitive_dependencies("c") == {"a", "b"}

    def test_unknown_id_raises(self):
        graph = DependencyGraph({"a": set()})
        with pytest.raises(SkillNotFound):
            graph.topological_order(["nope"])

    def test_long_chain_does_not_recurse(self):
        n = 5000
        edges = {f"s{i}": ({f"s{i - 1}"} if i else set()) for i in range(n)}
        graph = DependencyGraph(edges)
        order = graph.topological_order([f"s{n - 1}"], include_dependencies=True)
        assert order[0] == "s0"
        assert len(order) == n


# ── Tests: Catalog ────────────────────────────────────────────────────


@pytest.fixture
def catalog() -> Catalog:
    return Catalog([
        _skill("intake", phase=Phase.INIT, category=SkillCategory.CORE, tags=("sales",),
               description="Collect requirements"),
        _skill("design", depends_on={"intake"}, phase=Phase.SCAFFOLD),
        _skill("build", depends_on={"design"}, category=SkillCategory.CORE),
        _skill("build", version="1.4.0", depends_on={"design"}, category=SkillCategory.CORE),
        _skill("build", version="2.0.0", depends_on={"design"}, category=SkillCategory.CORE),
        _skill("docs", phase=Phase.DOCUMENT, tags=("writing",)),
    ], generation=3)


class TestCatalog:
    def test_get_latest(self, catalog: Catalog):
        assert catalog.get("build").version == "2.0.0"

    def test_get_with_constraint(self, catalog: Catalog):
        assert catalog.get("build", "^1.0").version == "1.4.0"
        assert catalog.get("build", "1.0.0").version == "1.0.0"

    def test_get_missing(self, catalog: Catalog):
        with pytest.raises(SkillNotFound):
            catalog.get("ghost")
        with pytest.raises(SkillNotFound):
            catalog.get("build", "^3")

    def test_versions_sorted(self, catalog: Catalog):
        assert catalog.versions("build") == ["1.0.0", "1.4.0", "2.0.0"]

    def test_resolve_order(self, catalog: Catalog):
        assert catalog.resolve_order(["build", "intake", "design"]) == ["intake", "design", "build"]

    def test_iteration_yields_latest(self, catalog: Catalog):
        ids = [(d.id, d.version) for d in catalog]
        assert ("build", "2.0.0") in ids
        assert len(ids) == 4
        assert len(catalog) == 4

    def test_duplicate_version_conflict(self):
        with pytest.raises(VersionConflict):
            Catalog([_skill("a"), _skill("a")])

    def test_cycle_rejected(self):
        with pytest.raises(CycleError):
            Catalog([_skill("a", depends_on={"b"}), _skill("b", depends_on={"a"})])

    def test_dependencies_of_other_versions_do_not_merge(self):
        catalog = Catalog([
            _skill("a", "1.0.0", depends_on={"b"}),
            _skill("a", "2.0.0"),
            _skill("b", "1.0.0"),
            _skill("b", "2.0.0", depends_on={"a"}),
        ])
        assert catalog.resolve_order(["b", "a"]) == ["a", "b"]
        assert catalog.graph.dependencies("a") == []

    def test_pinned_versions_order(self):
        catalog = Catalog([
            _skill("a", "1.0.0", depends_on={"b"}),
            _skill("a", "2.0.0"),
            _skill("b", "1.0.0"),
            _skill("b", "2.0.0", depends_on={"a"}),
        ])
        old_a, old_b = catalog.get("a", "1.0.0"), catalog.get("b", "1.0.0")
        assert catalog.resolve_order(["a", "b"], pinned=[old_a, old_b]) == ["b", "a"]
        assert catalog.dependency_graph([old_a]).dependencies("a") == ["b"]
        assert catalog.dependency_graph([catalog.get("a")]) is catalog.graph
        with pytest.raises(CycleError):
            catalog.resolve_order(["a", "b"], pinned=[old_a, catalog.get("b")])

    def test_by_phase_and_category(self, catalog: Catalog):
        assert [d.id for d in catalog.by_phase("init")] == ["intake"]
        assert [d.id for d in catalog.by_category("core")] == ["build", "intake"]

    def test_by_tag_and_search(self, catalog: Catalog):
        assert [d.id for d in catalog.by_tag("writing")] == ["docs"]
        assert [d.id for d in catalog.search("requirements")] == ["intake"]
        assert [d.id for d in catalog.search("SALES")] == ["intake"]
        assert len(catalog.search("")) == 4

    def test_phase_summary(self, catalog: Catalog):
        summary = {row["phase"]: row for row in catalog.phase_summary()}
        assert len(summary) == 10
        assert summary["DOCUMENT"]["skills"] == ["docs"]
        assert summary["SHIP"]["skill_count"] == 0

    def test_generation(self, catalog: Catalog):
        assert catalog.generation == 3


class TestLoadCatalog:
    def test_malformed_document_skipped(self):
        sources = [
            SkillSource(_doc("good", phase="TEST"), origin="good.md"),
            SkillSource(_doc("bad", phase="NOPE"), origin="bad.md"),
        ]
        catalog = load_catalog(sources)
        assert catalog.ids == ["good"]
        assert len(catalog.errors) == 1
        assert catalog.errors[0].origin == "bad.md"

    def test_ambiguous_phases_listed(self):
        sources = [SkillSource("---\nname: m\n---\nrelease after code review")]
        catalog = load_catalog(sources)
        assert [d.id for d in catalog.ambiguous_phases()] == ["m"]

    def test_discover_from_disk(self, tmp_path: Path):
        (tmp_path / "alpha").mkdir()
        (tmp_path / "alpha" / "SKILL.md").write_text("---\nphase: INIT\n---\nbody")
        (tmp_path / "beta.md").write_text(_doc("beta", phase="TEST"))
        (tmp_path / "README.md").write_text("not a skill")
        (tmp_path / "empty-dir").mkdir()

        sources = discover_skill_sources([tmp_path, tmp_path / "missing"])
        catalog = load_catalog(sources)
        assert catalog.ids == ["alpha", "beta"]
        assert catalog.get("alpha").origin.endswith("SKILL.md")


class TestCatalogRegistry:
    def test_snapshot_before_init_raises(self):
        with pytest.raises(RuntimeError):
            CatalogRegistry().snapshot()

    def test_reload_swaps_snapshot(self, tmp_path: Path):
        (tmp_path / "a.md").write_text(_doc("a", phase="INIT"))
        registry = CatalogRegistry.from_dirs([tmp_path])
        first = registry.snapshot()
        assert first.ids == ["a"]

        (tmp_path / "b.md").write_text(_doc("b", phase="TEST", depends_on="[a]"))
        second = registry.reload()
        assert second.generation == first.generation + 1
        assert registry.snapshot() is second
        # the old snapshot is untouched
        assert first.ids == ["a"]
        assert second.ids == ["a", "b"]

    def test_failed_reload_keeps_previous(self, tmp_path: Path):
        (tmp_path / "a.md").write_text(_doc("a", phase="INIT"))
        registry = CatalogRegistry.from_dirs([tmp_path])
        before = registry.snapshot()

        (tmp_path / "a.md").write_text(_doc("a", phase="INIT", depends_on="[b]"))
        (tmp_path / "b.md").write_text(_doc("b", phase="INIT", depends_on="[a]"))
        with pytest.raises(CycleError):
            registry.reload()
        assert registry.snapshot() is before

    def test_init_with_fixed_descriptors(self):
        registry = CatalogRegistry()
        catalog = registry.init([_skill("x")])
        assert registry.initialized
        assert catalog.generation == 1
        assert "x" in registry.snapshot()
