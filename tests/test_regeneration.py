"""Change detection and regeneration planning against a hand-built cache record."""

from unittest.mock import patch

import pytest

from utils.change_detector import (
    ADDED,
    DELETED,
    MODIFIED,
    analyze_changes,
    detect_file_changes,
    find_affected_chapters,
    has_repo_changes,
)
from utils.models import Abstraction, Chapter, RelationshipData, Relationship, SourceFile
from utils.regeneration import (
    RegenerationPolicy,
    cached_chapter_slugs,
    has_usable_cache,
    plan_regeneration,
    resolve_after_reidentification,
)
from utils.repo_cache import CachedAbstraction, RepoCacheStore, snapshot_files

ALL_SLUGS = ["01_a", "02_c", "03_b"]


def ten_files(**overrides):
    contents = {f"src/f{i}.py": f"value = {i}\n" for i in range(10)}
    contents.update(overrides)
    return [SourceFile(path, content) for path, content in contents.items()]


def modified(*indices):
    return ten_files(**{f"src/f{i}.py": f"value = {i} + 1\n" for i in indices})


def build_cache(files=None):
    """A(f0,f1), C(f2..f5), B(f6..f9) written in that order; 03_b builds on 01_a."""
    files = files or ten_files()
    cache = RepoCacheStore.create("https://github.com/example/ten")
    cache.files = snapshot_files(files)
    cache.abstractions = [
        CachedAbstraction("A", "first", ["src/f0.py", "src/f1.py"]),
        CachedAbstraction("C", "second", [f"src/f{i}.py" for i in range(2, 6)]),
        CachedAbstraction("B", "third", [f"src/f{i}.py" for i in range(6, 10)]),
    ]
    cache.relationships = RelationshipData("Ten files.", [Relationship(0, 1, "feeds"), Relationship(1, 2, "feeds")])
    cache.chapter_order = [0, 1, 2]
    cache.chapters = {
        "01_a": Chapter("01_a", "A", "# Chapter 1: A", ["A"], []),
        "02_c": Chapter("02_c", "C", "# Chapter 2: C", ["C"], []),
        "03_b": Chapter("03_b", "B", "# Chapter 3: B", ["B"], ["01_a"]),
    }
    return cache


class TestChangeDetection:
    def test_unchanged_files(self):
        analysis = analyze_changes(ten_files(), build_cache())
        assert analysis.change_percentage == 0
        assert not analysis.has_changes
        assert len(analysis.unchanged_files) == 10
        assert analysis.summary.startswith("No changes detected")

    def test_classifies_added_modified_deleted(self):
        cache = build_cache()
        files = [f for f in modified(3) if f.path != "src/f9.py"] + [SourceFile("src/new.py", "x = 1\n")]

        changes = {c.path: c.type for c in detect_file_changes(files, cache)}

        assert changes == {"src/f3.py": MODIFIED, "src/new.py": ADDED, "src/f9.py": DELETED}

    def test_percentage_counts_deleted_files(self):
        files = [f for f in ten_files() if f.path not in ("src/f8.py", "src/f9.py")]
        analysis = analyze_changes(files, build_cache())
        assert analysis.deleted_files == ["src/f8.py", "src/f9.py"]
        assert analysis.change_percentage == pytest.approx(25.0)
        assert analysis.affected_abstractions == ["B"]

    def test_no_cache_marks_everything_added(self):
        analysis = analyze_changes(ten_files(), None)
        assert analysis.change_percentage == 100
        assert len(analysis.added_files) == 10

    def test_dependency_closure(self):
        analysis = analyze_changes(modified(0, 1), build_cache())
        assert analysis.affected_abstractions == ["A"]
        assert analysis.chapters_to_regenerate == ["01_a", "03_b"]
        assert analysis.chapters_to_keep == ["02_c"]

    def test_transitive_closure(self):
        cache = build_cache()
        cache.chapters["02_c"].dependencies = ["03_b"]
        assert find_affected_chapters(["A"], cache) == ["01_a", "02_c", "03_b"]

    def test_abstraction_match_ignores_case(self):
        cache = build_cache()
        cache.chapters["02_c"].abstractions_covered = ["c"]
        assert find_affected_chapters(["C"], cache) == ["02_c"]

    def test_quick_check(self):
        cache = build_cache()
        assert not has_repo_changes(ten_files(), cache)
        assert has_repo_changes(modified(4), cache)
        assert has_repo_changes(ten_files()[:9], cache)
        assert has_repo_changes(ten_files(), None)


class TestPlanning:
    def test_nothing_changed_is_skip(self):
        cache = build_cache()
        plan = plan_regeneration(analyze_changes(ten_files(), cache), cache)

        assert plan.mode == "skip"
        assert plan.chapters_to_regenerate == []
        assert plan.estimated_savings == 100
        assert not plan.rerun_abstraction_identification
        assert plan.reuses_analysis

    def test_twenty_percent_is_partial_with_closure(self):
        cache = build_cache()
        plan = plan_regeneration(analyze_changes(modified(0, 1), cache), cache)

        assert plan.mode == "partial"
        assert plan.chapters_to_regenerate == ["01_a", "03_b"]
        assert plan.estimated_savings == 33
        assert plan.is_cached("02_c")
        assert not plan.is_cached("03_b")

    def test_seventy_percent_is_full(self):
        cache = build_cache()
        plan = plan_regeneration(analyze_changes(modified(*range(7)), cache), cache)

        assert plan.mode == "full"
        assert plan.chapters_to_regenerate == ALL_SLUGS
        assert plan.estimated_savings == 0
        assert not plan.is_cached("02_c")

    def test_between_thresholds_defers_chapter_choice(self):
        cache = build_cache()
        plan = plan_regeneration(analyze_changes(modified(0, 1, 2, 3, 4), cache), cache)

        assert plan.mode == "partial_reidentify"
        assert not plan.resolved
        assert plan.rerun_abstraction_identification
        assert not plan.is_cached("02_c")

    def test_thresholds_are_configurable(self):
        cache = build_cache()
        strict = RegenerationPolicy(partial_below_pct=10, reidentify_below_pct=15)
        plan = plan_regeneration(analyze_changes(modified(0, 1), cache), cache, policy=strict)
        assert plan.mode == "full"

    def test_no_cache_is_full(self):
        plan = plan_regeneration(analyze_changes(ten_files(), None), None)
        assert plan.mode == "full"
        assert plan.chapters_to_regenerate == []

    def test_incomplete_cache_is_full(self):
        cache = build_cache()
        del cache.chapters["02_c"]
        assert not has_usable_cache(cache)
        assert plan_regeneration(analyze_changes(ten_files(), cache), cache).mode == "full"

    def test_forced_full_lists_cached_chapters(self):
        cache = build_cache()
        plan = plan_regeneration(analyze_changes(ten_files(), cache), cache, forced_mode="full")
        assert plan.mode == "full"
        assert plan.chapters_to_regenerate == ALL_SLUGS

    def test_forced_skip_needs_a_usable_cache(self):
        plan = plan_regeneration(analyze_changes(ten_files(), None), None, forced_mode="skip")
        assert plan.mode == "full"

        cache = build_cache()
        plan = plan_regeneration(analyze_changes(modified(*range(8)), cache), cache, forced_mode="skip")
        assert plan.mode == "skip"

    def test_planning_error_falls_back_to_full(self):
        cache = build_cache()
        analysis = analyze_changes(modified(0), cache)
        with patch("utils.regeneration.has_usable_cache", side_effect=RuntimeError("boom")):
            plan = plan_regeneration(analysis, cache)
        assert plan.mode == "full"
        assert "RuntimeError" in plan.reason

    def test_cached_chapter_slugs(self):
        assert cached_chapter_slugs(build_cache()) == ALL_SLUGS


class TestResolveAfterReidentification:
    def setup_method(self):
        self.cache = build_cache()
        # Chapters written by the flow depend on their narrative predecessor
        self.cache.chapters["02_c"].dependencies = ["01_a"]
        self.cache.chapters["03_b"].dependencies = ["02_c"]
        self.abstractions = [
            Abstraction("A", "first", [0, 1]),
            Abstraction("C", "second", [2, 3, 4, 5]),
            Abstraction("B", "third", [6, 7, 8, 9]),
        ]

    def resolve(self, files, abstractions=None, order=(0, 1, 2)):
        analysis = analyze_changes(files, self.cache)
        plan = plan_regeneration(analysis, self.cache, forced_mode="partial_reidentify")
        return resolve_after_reidentification(
            plan, self.cache, analysis, abstractions or self.abstractions, list(order), files
        )

    def test_only_changed_chapter_and_successors(self):
        plan = self.resolve(modified(6, 7))
        assert plan.resolved
        assert plan.chapters_to_regenerate == ["03_b"]
        assert plan.estimated_savings == 67

    def test_change_in_first_chapter_cascades(self):
        plan = self.resolve(modified(0))
        assert plan.chapters_to_regenerate == ALL_SLUGS

    def test_changed_file_membership_regenerates(self):
        abstractions = [
            Abstraction("A", "first", [0, 1]),
            Abstraction("C", "second", [2, 3, 4]),
            Abstraction("B", "third", [5, 6, 7, 8, 9]),
        ]
        plan = self.resolve(ten_files(), abstractions=abstractions)
        assert plan.chapters_to_regenerate == ["02_c", "03_b"]

    def test_new_order_regenerates_moved_chapters(self):
        plan = self.resolve(ten_files(), order=(0, 2, 1))
        # New slugs 02_b and 03_c do not exist in the cache
        assert plan.chapters_to_regenerate == ["02_b", "03_c"]
