"""Structured output validation of model responses."""

import pytest

from utils.errors import IncompleteOrder, InvalidReference, MalformedOutput
from utils.models import Relationship, RelationshipData
from utils.validation import (
    AbstractionListSchema,
    ChapterOrderSchema,
    RelationshipSchema,
    extract_fenced_block,
    parse_index,
    uncovered_abstractions,
)


def fenced(body):
    return f"Sure! Here it is:\n```yaml\n{body}\n```\nHope that helps."


class TestFencedBlock:
    def test_extracts_first_block(self):
        text = "```yaml\na: 1\n```\n```yaml\nb: 2\n```"
        assert extract_fenced_block(text) == "a: 1"

    def test_plain_fence_accepted(self):
        assert extract_fenced_block("```\n- 1\n```") == "- 1"

    def test_other_language_block_before_yaml(self):
        text = "Entry point:\n```python\nmain()\n```\n\nOrder:\n```yaml\n- 0 # A\n```"
        assert extract_fenced_block(text) == "- 0 # A"
        assert ChapterOrderSchema().parse(text, 1) == [0]

    def test_yaml_block_preferred_over_earlier_plain_one(self):
        text = "```\nnot this\n```\n```yml\na: 1\n```"
        assert extract_fenced_block(text) == "a: 1"

    def test_only_other_languages(self):
        with pytest.raises(MalformedOutput):
            extract_fenced_block("```python\nmain()\n```")

    def test_missing_block(self):
        with pytest.raises(MalformedOutput):
            extract_fenced_block("no block at all")

    def test_unparsable_block(self):
        with pytest.raises(MalformedOutput):
            ChapterOrderSchema().parse(fenced("- [unclosed"), 1)


class TestParseIndex:
    @pytest.mark.parametrize("entry, expected", [
        (2, 2),
        ("2", 2),
        ("2 # src/app.py", 2),
        ("  0 # Name", 0),
    ])
    def test_accepted_forms(self, entry, expected):
        assert parse_index(entry, 3) == expected

    @pytest.mark.parametrize("entry", [3, -1, "x # name", "1.5", True, None, 1.0])
    def test_rejected(self, entry):
        with pytest.raises(InvalidReference):
            parse_index(entry, 3)


class TestAbstractionList:
    def test_valid(self):
        text = fenced(
            "- name: |\n    Query Engine\n  description: |\n    Runs queries.\n"
            "  file_indices:\n    - 1 # b.py\n    - 0 # a.py\n    - 1 # b.py"
        )
        (abstraction,) = AbstractionListSchema().parse(text, 2)
        assert abstraction.name == "Query Engine"
        assert abstraction.description == "Runs queries."
        assert abstraction.files == [0, 1]

    def test_file_index_out_of_range(self):
        text = fenced("- name: A\n  description: d\n  file_indices: [5]")
        with pytest.raises(InvalidReference):
            AbstractionListSchema().parse(text, 2)

    def test_missing_key(self):
        with pytest.raises(MalformedOutput):
            AbstractionListSchema().parse(fenced("- name: A\n  file_indices: [0]"), 2)

    def test_not_a_list(self):
        with pytest.raises(MalformedOutput):
            AbstractionListSchema().parse(fenced("name: A"), 2)

    def test_empty_list(self):
        with pytest.raises(MalformedOutput):
            AbstractionListSchema().parse(fenced("[]"), 2)


class TestRelationships:
    def test_valid(self):
        text = fenced(
            "summary: |\n  The gist.\nrelationships:\n"
            "  - from_abstraction: 0 # A\n    to_abstraction: 1 # B\n    label: Calls"
        )
        data = RelationshipSchema().parse(text, 2)
        assert data.summary == "The gist."
        assert data.details == [Relationship(0, 1, "Calls")]

    def test_target_out_of_range(self):
        text = fenced(
            "summary: s\nrelationships:\n  - from_abstraction: 0\n    to_abstraction: 4\n    label: x"
        )
        with pytest.raises(InvalidReference):
            RelationshipSchema().parse(text, 2)

    def test_missing_summary(self):
        with pytest.raises(MalformedOutput):
            RelationshipSchema().parse(fenced("relationships: []"), 2)

    def test_uncovered(self):
        data = RelationshipData("s", [Relationship(0, 1, "x")])
        assert uncovered_abstractions(data, 4) == [2, 3]


class TestChapterOrder:
    def test_valid_permutation(self):
        assert ChapterOrderSchema().parse(fenced("- 2 # C\n- 0 # A\n- 1 # B"), 3) == [2, 0, 1]

    def test_duplicate(self):
        with pytest.raises(IncompleteOrder):
            ChapterOrderSchema().parse(fenced("- 0\n- 0\n- 1"), 3)

    def test_missing_index(self):
        with pytest.raises(IncompleteOrder) as excinfo:
            ChapterOrderSchema().parse(fenced("- 0\n- 2"), 3)
        assert "[1]" in str(excinfo.value)

    def test_out_of_range(self):
        with pytest.raises(InvalidReference):
            ChapterOrderSchema().parse(fenced("- 0\n- 1\n- 3"), 3)
