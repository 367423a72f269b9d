"""Content packing: truncation, signature extraction, priority and budget."""

from utils.content_packer import (
    estimate_tokens,
    extract_file_signatures,
    file_priority,
    pack_files,
    truncate_file_content,
)
from utils.models import SourceFile

PYTHON_SOURCE = """import os
from typing import List

# helpers
class Store:
    def get(self, key):
        return key

async def main():
    print("hi")
"""

TYPESCRIPT_SOURCE = """import { foo } from './foo';
export interface Props {
  name: string;
}
export class Widget {
  constructor(private props: Props) {
    this.x = 1;
  }
  render() {
    if (x) {
      return 1;
    }
  }
}
export function helper(a: number): number {
  return a * 2;
}
"""


class TestTruncation:
    def test_short_file_unchanged(self):
        content = "a\nb\nc"
        assert truncate_file_content(content, max_lines=10) == content

    def test_keeps_head_and_tail(self):
        content = "\n".join(f"line {i}" for i in range(200))
        truncated = truncate_file_content(content, max_lines=100)

        assert "... [100 lines omitted for brevity - file has 200 total lines] ..." in truncated
        assert truncated.startswith("line 0\n")
        assert "line 79\n" in truncated
        assert "line 80\n" not in truncated
        assert truncated.endswith("line 199")
        assert "line 179\n" not in truncated


class TestSignatures:
    def test_python_bodies_dropped(self):
        result = extract_file_signatures(PYTHON_SOURCE, "src/store.py")

        assert result.startswith("# Python Module: src/store.py\n")
        assert "import os" in result
        assert "from typing import List" in result
        assert "class Store:" in result
        assert "    def get(self, key): ..." in result
        assert "async def main(): ..." in result
        assert "return key" not in result
        assert "print" not in result
        assert "# helpers" not in result

    def test_typescript_keeps_types_and_signatures(self):
        result = extract_file_signatures(TYPESCRIPT_SOURCE, "src/widget.ts")

        assert result.startswith("// TypeScript Module: src/widget.ts\n")
        assert "import { foo } from './foo';" in result
        assert "export interface Props {\n  name: string;\n}" in result
        assert "export class Widget {" in result
        assert "  constructor(private props: Props) { /* ... */ }" in result
        assert "  render() { /* ... */ }" in result
        assert "export function helper(a: number): number { /* ... */ }" in result
        assert "this.x" not in result
        assert "return a * 2" not in result
        assert "if (x)" not in result


class TestPacking:
    def test_token_estimate(self):
        assert estimate_tokens("a" * 7) == 2
        assert estimate_tokens("a" * 10) == 3
        assert estimate_tokens("") == 0

    def test_entry_points_packed_first(self):
        files = [
            SourceFile("src/zeta.py", "z = 1"),
            SourceFile("src/main.py", "m = 1"),
            SourceFile("src/__init__.py", "i = 1"),
        ]
        assert file_priority("src/__init__.py") < file_priority("src/main.py") < file_priority("src/zeta.py")

        packed = pack_files(files, budget_tokens=10_000, mode="tutorial")

        assert packed.included_indices == [2, 1, 0]
        assert packed.context.index("File Index 2") < packed.context.index("File Index 0")
        assert packed.file_listing == "- 0 # src/zeta.py\n- 1 # src/main.py\n- 2 # src/__init__.py"

    def test_stops_at_first_file_over_budget(self):
        files = [
            SourceFile("a.txt", "x = 1"),
            SourceFile("b.txt", "y" * 1000),
            SourceFile("c.txt", "z = 2"),
        ]
        packed = pack_files(files, budget_tokens=50, mode="tutorial")

        assert packed.included_indices == [0]
        assert packed.skipped_indices == [1, 2]
        assert packed.packed_tokens <= 50
        assert "--- File Index 0: a.txt ---\nx = 1\n\n" == packed.context

    def test_packs_only_requested_indices(self):
        files = [SourceFile(f"f{i}.txt", str(i)) for i in range(4)]
        packed = pack_files(files, budget_tokens=1000, mode="tutorial", indices=[3, 1, 9])
        assert sorted(packed.included_indices) == [1, 3]

    def test_architecture_mode_uses_signatures(self):
        files = [SourceFile("src/store.py", PYTHON_SOURCE)]
        packed = pack_files(files, budget_tokens=1000, mode="architecture")
        assert "return key" not in packed.context
        assert "class Store:" in packed.context

    def test_tutorial_mode_respects_line_budget(self):
        files = [SourceFile("big.py", "\n".join(f"x{i} = {i}" for i in range(50)))]
        packed = pack_files(files, budget_tokens=10_000, mode="tutorial", max_lines_per_file=10)
        assert "40 lines omitted" in packed.context
