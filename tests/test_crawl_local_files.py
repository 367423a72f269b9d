"""Local directory crawling with include/exclude patterns, .gitignore and size limit."""

import pytest

from utils.crawl_local_files import crawl_local_files


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "app.py").write_text("print('app')\n", encoding="utf-8")
    (root / "src" / "notes.md").write_text("# notes\n", encoding="utf-8")
    (root / "tests").mkdir()
    (root / "tests" / "test_app.py").write_text("def test(): pass\n", encoding="utf-8")
    (root / "build").mkdir()
    (root / "build" / "out.py").write_text("x = 1\n", encoding="utf-8")
    (root / "big.py").write_text("y = 0\n" * 1000, encoding="utf-8")
    return root


class TestCrawlLocalFiles:
    def test_include_patterns(self, project):
        result = crawl_local_files(str(project), include_patterns={"*.py"})
        assert sorted(result["files"]) == ["big.py", "build/out.py", "src/app.py", "tests/test_app.py"]
        assert result["files"]["src/app.py"] == "print('app')\n"

    def test_exclude_patterns(self, project):
        result = crawl_local_files(str(project), include_patterns={"*.py"}, exclude_patterns={"tests/*", "build/*"})
        assert sorted(result["files"]) == ["big.py", "src/app.py"]
        assert result["stats"]["excluded"] == 3

    def test_gitignore(self, project):
        (project / ".gitignore").write_text("build/\n*.md\n", encoding="utf-8")
        result = crawl_local_files(str(project))
        assert "build/out.py" not in result["files"]
        assert "src/notes.md" not in result["files"]
        assert "src/app.py" in result["files"]

    def test_size_limit(self, project):
        result = crawl_local_files(str(project), include_patterns={"*.py"}, max_file_size=1000)
        assert "big.py" not in result["files"]
        assert result["stats"]["too_large"] == 1

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ValueError):
            crawl_local_files(str(tmp_path / "nope"))
