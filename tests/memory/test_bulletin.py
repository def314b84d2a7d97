"""Tests for MemoryBulletin."""

from unittest.mock import MagicMock, patch

from memory.bulletin import MemoryBulletin, _truncate_words, render
from memory.models import Memory
from shared_types import MemoryType


def _add(store, id, content, memory_type=MemoryType.FACT, importance=0.5):
    store.add(Memory(id=id, content=content, memory_type=memory_type, importance=importance))


class TestGather:
    def test_sections(self, store):
        _add(store, "i1", "Assistant name is Juniper", MemoryType.IDENTITY, importance=0.1)
        _add(store, "d1", "Chose Postgres over MySQL", MemoryType.DECISION)
        _add(store, "f1", "Deploys run on Fridays", importance=0.9)
        _add(store, "f2", "Office plant needs water", importance=0.2)

        sections = MemoryBulletin(store).gather()

        assert sections["Identity"] == ["Assistant name is Juniper"]
        assert sections["Decisions"] == ["Chose Postgres over MySQL"]
        assert sections["Facts"] == ["Deploys run on Fridays", "Office plant needs water"]
        assert sections["Open contradictions"] == []

    def test_identity_never_capped(self, store):
        for i in range(4):
            _add(store, f"i{i}", f"Identity line {i}", MemoryType.IDENTITY)
        for i in range(4):
            _add(store, f"f{i}", f"Fact line {i}")
        sections = MemoryBulletin(store, per_section=2).gather()
        assert len(sections["Identity"]) == 4
        assert len(sections["Facts"]) == 2

    def test_open_contradictions(self, store):
        _add(store, "a", "The staging cluster is healthy")
        _add(store, "b", "The staging cluster is not healthy")
        with store.structural_pass("r") as session:
            session.flag_contradiction("a", "b")
        items = MemoryBulletin(store).gather()["Open contradictions"]
        assert len(items) == 1
        assert "not healthy" in items[0]


class TestBuild:
    def test_raw_without_provider(self, store):
        _add(store, "f1", "Deploys run on Fridays")
        bulletin = MemoryBulletin(store).build()
        assert bulletin.condensed is False
        assert "## Facts" in bulletin.text
        assert "- Deploys run on Fridays" in bulletin.text

    def test_condensed_by_provider(self, store):
        _add(store, "f1", "Deploys run on Fridays")
        provider = MagicMock()
        provider.generate.return_value = "  Deploys happen on Fridays.  "
        builder = MemoryBulletin(store, provider=provider)
        bulletin = builder.build()
        assert bulletin.condensed is True
        assert bulletin.text == "Deploys happen on Fridays."
        assert builder.latest is bulletin

    def test_provider_failure_falls_back(self, store):
        _add(store, "f1", "Deploys run on Fridays")
        provider = MagicMock()
        provider.generate.side_effect = RuntimeError("down")
        with patch("memory.bulletin.logger") as mock_logger:
            bulletin = MemoryBulletin(store, provider=provider).build()
        assert bulletin.condensed is False
        assert "Deploys run on Fridays" in bulletin.text
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "bulletin_condense_failed"

    def test_empty_store(self, store):
        provider = MagicMock()
        bulletin = MemoryBulletin(store, provider=provider).build()
        assert bulletin.text == ""
        provider.generate.assert_not_called()


class TestRender:
    def test_skips_empty_sections(self):
        text = render({"Identity": [], "Facts": ["a"]})
        assert text == "## Facts\n- a"

    def test_truncate_words(self):
        assert _truncate_words("one two three four", 2) == "one two ..."
        assert _truncate_words("one two", 5) == "one two"
