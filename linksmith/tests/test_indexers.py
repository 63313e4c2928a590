"""Tests for the catalog, vault, co-occurrence and recency indexes."""

import json
import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from linksmith.engine.errors import CatalogUnavailableError, InvalidQueryError
from linksmith.engine.indexers.catalog import CatalogIndex, DuckDBEntityCatalog, load_catalog_file
from linksmith.engine.indexers.cooccurrence import (
    cooccurrence_boost, compute_npmi, deserialize_index, load_cooccurrence,
    mine_cooccurrences, round_half_up, save_cooccurrence, serialize_index, top_associations,
)
from linksmith.engine.indexers.recency import (
    RecencyIndex, build_recency_index, load_recency, save_recency,
)
from linksmith.engine.indexers.vault import iter_notes
from linksmith.engine.models import Entity, EntityCategory
from linksmith.engine.storage import StateStore

NOW = datetime(2024, 5, 1, 12, 0, 0)

ENTITIES = [
    Entity("Jordan Smith", EntityCategory.PEOPLE, aliases=("Jordy",), source_path="people/jordan-smith.md", hub_score=12),
    Entity("TypeScript", EntityCategory.TECHNOLOGIES, aliases=("ts-lang",), source_path="tech/typescript.md", hub_score=40),
    Entity("React", EntityCategory.TECHNOLOGIES, source_path="tech/react.md", hub_score=3),
]


@pytest.fixture
def store():
    """In-memory state store."""
    store = StateStore()
    yield store
    store.close()


@pytest.fixture
def catalog(store):
    catalog = DuckDBEntityCatalog(store)
    catalog.replace_all_entities(ENTITIES, built_at=NOW)
    return catalog


@pytest.fixture
def temp_vault():
    """Create a temporary vault with a few notes."""
    with tempfile.TemporaryDirectory() as tmpdir:
        vault = Path(tmpdir) / "vault"
        (vault / "daily").mkdir(parents=True)
        (vault / "tech").mkdir()
        (vault / ".obsidian").mkdir()

        (vault / "daily" / "2024-05-01.md").write_text(
            "---\ntags: [daily]\n---\nPaired with Jordan Smith on React hooks\n"
        )
        (vault / "tech" / "frontend.md").write_text("Jordan Smith maintains the React layer\n")
        (vault / "tech" / "typescript.md").write_text("TypeScript compiler flags\n")
        (vault / ".obsidian" / "cache.md").write_text("Jordan Smith React TypeScript\n")
        yield vault


class TestDuckDBEntityCatalog:
    """Test the DuckDB-backed catalog."""

    def test_list_entities(self, catalog):
        entities = catalog.list_entities()
        assert [e.name for e in entities] == ["Jordan Smith", "React", "TypeScript"]
        jordan = entities[0]
        assert jordan.category == EntityCategory.PEOPLE
        assert jordan.aliases == ("Jordy",)
        assert jordan.source_path == "people/jordan-smith.md"

    def test_built_at(self, catalog):
        assert catalog.catalog_built_at() == NOW

    def test_replace_dedupes_case_insensitively(self, store):
        catalog = DuckDBEntityCatalog(store)
        count = catalog.replace_all_entities([Entity("React"), Entity("react"), Entity("Vue")])
        assert count == 2
        assert [e.name for e in catalog.list_entities()] == ["React", "Vue"]

    def test_replace_swaps_everything(self, catalog):
        catalog.replace_all_entities([Entity("Svelte")], built_at=NOW + timedelta(hours=1))
        assert [e.name for e in catalog.list_entities()] == ["Svelte"]
        assert catalog.catalog_built_at() == NOW + timedelta(hours=1)

    def test_search_by_prefix(self, catalog):
        assert [e.name for e in catalog.search_by_prefix("JOR")] == ["Jordan Smith"]
        assert catalog.search_by_prefix("zzz") == []

    def test_get_by_alias_and_name(self, catalog):
        assert [e.name for e in catalog.get_by_alias("jordy")] == ["Jordan Smith"]
        assert catalog.get_by_name("typescript").name == "TypeScript"
        assert catalog.get_by_name("missing") is None

    def test_search_pattern(self, catalog):
        assert [e.name for e in catalog.search("^type")] == ["TypeScript"]
        assert [e.name for e in catalog.search("ts-lang")] == ["TypeScript"]

    def test_search_invalid_pattern(self, catalog):
        with pytest.raises(InvalidQueryError) as exc_info:
            catalog.search("(unclosed")
        assert exc_info.value.query == "(unclosed"

    def test_malformed_rows_tolerated(self, store, catalog):
        store.conn.execute(
            "INSERT INTO entities (name_lower, name, category, path, aliases_json, hub_score) VALUES (?, ?, ?, ?, ?, ?)",
            ["broken", "Broken", "nonsense", None, "not json", None]
        )
        store.conn.execute(
            "INSERT INTO entities (name_lower, name, category, path, aliases_json, hub_score) VALUES (?, ?, ?, ?, ?, ?)",
            ["", "", "people", None, "[]", 0]
        )
        broken = catalog.get_by_name("broken")
        assert broken.aliases == ()
        assert broken.category == EntityCategory.OTHER
        assert broken.hub_score == 0
        assert len(catalog.list_entities()) == 4


class TestLoadCatalogFile:
    """Test catalog import files."""

    def test_yaml_list(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text(
            "- name: Jordan Smith\n"
            "  category: people\n"
            "  aliases: [Jordy]\n"
            "  path: people/jordan-smith.md\n"
            "  hub_score: 12\n"
            "- name: React\n"
            "- category: people\n"
        )
        entities = load_catalog_file(path)
        assert [e.name for e in entities] == ["Jordan Smith", "React"]
        assert entities[0].aliases == ("Jordy",)
        assert entities[0].hub_score == 12
        assert entities[1].category == EntityCategory.OTHER

    def test_json_mapping(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps({"entities": [{"name": "React", "category": "technologies", "aliases": "bad"}]}))
        entities = load_catalog_file(path)
        assert entities == [Entity("React", EntityCategory.TECHNOLOGIES)]

    def test_not_a_list(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text("just a string\n")
        with pytest.raises(ValueError):
            load_catalog_file(path)


class FlakyProvider:
    """Catalog provider whose failures are switched on by the test."""

    def __init__(self, entities, built_at):
        self.entities = entities
        self.built_at = built_at
        self.fail = False

    def list_entities(self):
        if self.fail:
            raise RuntimeError("catalog offline")
        return list(self.entities)

    def catalog_built_at(self):
        if self.fail:
            raise RuntimeError("catalog offline")
        return self.built_at

    def search_by_prefix(self, prefix, limit=20):
        return []

    def get_by_alias(self, alias):
        return []


class TestCatalogIndex:
    """Test snapshot refresh."""

    def test_initial_load(self):
        index = CatalogIndex(FlakyProvider(ENTITIES, NOW))
        assert not index.is_loaded
        assert index.refresh_if_stale()
        assert len(index.snapshot()) == 3
        assert index.built_at == NOW

    def test_no_reload_when_fresh(self):
        index = CatalogIndex(FlakyProvider(ENTITIES, NOW))
        index.refresh_if_stale()
        assert not index.refresh_if_stale()

    def test_reload_when_newer(self):
        provider = FlakyProvider(ENTITIES, NOW)
        index = CatalogIndex(provider)
        index.refresh_if_stale()
        before = index.snapshot()

        provider.entities = [Entity("Svelte")]
        provider.built_at = NOW + timedelta(minutes=5)
        assert index.refresh_if_stale()
        assert [e.name for e in index.snapshot()] == ["Svelte"]
        # Readers holding the old snapshot are unaffected
        assert len(before) == 3

    def test_failure_keeps_previous_snapshot(self):
        provider = FlakyProvider(ENTITIES, NOW)
        index = CatalogIndex(provider)
        index.refresh_if_stale()
        provider.fail = True
        assert not index.refresh_if_stale()
        assert len(index.snapshot()) == 3

    def test_failure_without_snapshot(self):
        provider = FlakyProvider(ENTITIES, NOW)
        provider.fail = True
        index = CatalogIndex(provider)
        with pytest.raises(CatalogUnavailableError):
            index.refresh_if_stale()
        with pytest.raises(CatalogUnavailableError):
            index.snapshot()


class TestVault:
    """Test note scanning."""

    def test_iter_notes(self, temp_vault):
        notes = list(iter_notes(temp_vault))
        assert [n.path for n in notes] == ["daily/2024-05-01.md", "tech/frontend.md", "tech/typescript.md"]
        assert notes[0].metadata == {"tags": ["daily"]}
        assert notes[0].content.startswith("Paired with")

    def test_custom_exclusions(self, temp_vault):
        notes = list(iter_notes(temp_vault, excluded_folders=["tech"]))
        assert [n.path for n in notes] == [".obsidian/cache.md", "daily/2024-05-01.md"]


class TestCooccurrence:
    """Test co-occurrence mining and boosts."""

    NOTES = [
        ("a.md", "Jordan Smith reviewed React hooks"),
        ("b.md", "Jordan Smith pairing on React"),
        ("c.md", "TypeScript compiler flags"),
        ("d.md", "Gardening"),
    ]

    @pytest.fixture
    def index(self):
        return mine_cooccurrences(self.NOTES, [e.name for e in ENTITIES])

    def test_mining(self, index):
        assert index.total_notes_scanned == 4
        assert index.associations["jordan smith"]["react"] == 2.0
        assert index.associations["react"]["jordan smith"] == 2.0
        assert index.document_frequency == {"jordan smith": 2, "react": 2, "typescript": 1}
        assert index.total_associations == 2

    def test_crowded_notes_weigh_less(self):
        index = mine_cooccurrences(
            [("a.md", "Jordan Smith React TypeScript")], [e.name for e in ENTITIES]
        )
        assert index.associations["react"]["typescript"] == pytest.approx(1 / 1.0986, rel=1e-3)

    def test_long_names_ignored(self):
        index = mine_cooccurrences([("a.md", "x")], ["A" * 31, "React"])
        assert index.document_frequency == {}

    def test_npmi(self):
        assert compute_npmi(2, 2, 2, 4) == pytest.approx(1.0)
        assert compute_npmi(0, 2, 2, 4) == 0.0
        assert compute_npmi(1, 2, 1, 4) == pytest.approx(0.5)

    def test_boost(self, index):
        assert cooccurrence_boost("React", ["Jordan Smith"], index) == 12
        assert cooccurrence_boost("React", ["TypeScript"], index) == 0
        assert cooccurrence_boost("Unknown", ["Jordan Smith"], index) == 0
        assert cooccurrence_boost("React", ["Jordan Smith"], None) == 0

    def test_min_count(self):
        index = mine_cooccurrences(self.NOTES, [e.name for e in ENTITIES], min_count=3)
        assert cooccurrence_boost("React", ["Jordan Smith"], index) == 0

    def test_recency_multiplier(self, index):
        stale = RecencyIndex(last_mentioned={})
        assert cooccurrence_boost("React", ["Jordan Smith"], index, stale, NOW) == 6
        fresh = RecencyIndex(last_mentioned={"react": NOW - timedelta(minutes=5)})
        assert cooccurrence_boost("React", ["Jordan Smith"], index, fresh, NOW) == 12

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(3.5) == 4
        assert round_half_up(2.4) == 2

    def test_top_associations(self, index):
        assert top_associations(index, "Jordan Smith") == [("react", 2.0)]
        assert top_associations(index, "nobody") == []

    def test_serialization(self, index):
        restored = deserialize_index(json.loads(json.dumps(serialize_index(index))))
        assert restored.associations == index.associations
        assert restored.total_notes_scanned == 4
        assert deserialize_index({"associations": "nope"}) is None
        assert deserialize_index(None) is None

    def test_cache(self, store, index):
        assert load_cooccurrence(store) is None
        save_cooccurrence(store, index, built_at=NOW)
        save_cooccurrence(store, index, built_at=NOW)

        cached = load_cooccurrence(store, now=NOW + timedelta(minutes=30))
        assert cached.document_frequency == index.document_frequency
        assert load_cooccurrence(store, now=NOW + timedelta(hours=2)) is None
        assert load_cooccurrence(store, max_age=None, now=NOW + timedelta(hours=2)) is not None

    def test_unreadable_cache(self, store):
        store.conn.execute(
            "INSERT INTO cooccurrence_cache (id, data, built_at) VALUES (1, 'garbage', ?)", [NOW]
        )
        assert load_cooccurrence(store, now=NOW) is None


class TestRecency:
    """Test last-mention tracking."""

    def test_build_from_vault(self, temp_vault):
        old = (NOW - timedelta(days=3)).timestamp()
        for note in (temp_vault / "tech").glob("*.md"):
            os.utime(note, (old, old))

        index = build_recency_index(temp_vault, ENTITIES)

        assert set(index.last_mentioned) == {"jordan smith", "react", "typescript"}
        assert index.get("TypeScript") < index.get("React")
        assert index.last_updated is not None

    def test_persist(self, store):
        index = RecencyIndex(
            last_mentioned={"react": NOW - timedelta(hours=1), "vue": NOW},
            last_updated=NOW,
        )
        save_recency(store, index)
        save_recency(store, RecencyIndex(last_mentioned={"react": NOW}, last_updated=NOW))

        loaded = load_recency(store)
        assert loaded.last_mentioned == {"react": NOW}
        assert loaded.last_updated == NOW

    def test_stale_and_missing(self, store):
        assert load_recency(store) is None
        save_recency(store, RecencyIndex(last_mentioned={"react": NOW}, last_updated=NOW))
        assert load_recency(store, max_age=timedelta(hours=1), now=NOW + timedelta(hours=2)) is None
        assert load_recency(store, max_age=timedelta(hours=1), now=NOW) is not None
