"""
Tests for command line parsing and source selection.
"""

import pytest

from knowledge_index.cli import _sources, build_parser
from knowledge_index.services.chunk_source import GameDataDirectorySource, JsonlChunkSource, TextFileSource
from knowledge_index.services.corpus import Corpus


class TestParser:

    def test_index_sources(self, tmp_path):
        args = build_parser().parse_args([
            "index", "--code-dump", str(tmp_path / "code.jsonl"), "--code-version", "7",
            "--gamedata", str(tmp_path / "data"), "--docs", str(tmp_path / "docs"),
        ])

        sources = _sources(args)

        assert [type(s) for s in sources] == [JsonlChunkSource, GameDataDirectorySource, TextFileSource]
        assert [s.corpus for s in sources] == [Corpus.CODE, Corpus.GAMEDATA, Corpus.DOCS]
        assert sources[0].text_builder_version == "7"

    def test_search_options(self):
        args = build_parser().parse_args(["search", "what drops from goblin", "-c", "gamedata", "-n", "3"])
        assert args.query == "what drops from goblin"
        assert args.corpora == ["gamedata"]
        assert args.limit == 3
        assert args.mode == "auto"

    def test_unknown_mode_is_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["search", "torch", "--mode", "psychic"])

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
