"""Command line entry point."""

import pytest

from run import build_parser, main


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args(["--dir", "."])
        assert args.mode == "tutorial"
        assert args.language == "english"
        assert args.regeneration is None
        assert not args.no_cache
        assert args.cache_dir == "cache"

    def test_rejects_unknown_mode(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--dir", ".", "--mode", "novel"])


class TestMain:
    def test_cache_stats_on_empty_cache(self, tmp_path, capsys):
        assert main(["--cache-stats", "--cache-dir", str(tmp_path / "cache")]) == 0
        out = capsys.readouterr().out
        assert "Repositories: 0" in out
        assert "Entries: 0" in out

    def test_cleanup_dry_run(self, tmp_path, capsys):
        assert main(["--cleanup-cache", "--dry-run", "--cache-dir", str(tmp_path / "cache")]) == 0
        assert "[DRY RUN] Removed 0 cached repositories" in capsys.readouterr().out

    def test_dir_required(self, tmp_path):
        with pytest.raises(SystemExit):
            main(["--cache-dir", str(tmp_path / "cache")])

    def test_missing_directory(self, tmp_path):
        assert main(["--dir", str(tmp_path / "nope"), "--cache-dir", str(tmp_path / "cache")]) == 1
