"""Tests for item, site and domain-setting bookkeeping."""

import sys
import tempfile
import unittest
from decimal import Decimal
from pathlib import Path

from sqlalchemy import text

sys.path.insert(0, str(Path(__file__).parent.parent))

from pricetracker.exporter import export_history
from pricetracker.models import TrackedSite, get_engine, get_session_factory, init_db
from pricetracker.repository import UNNAMED_PRODUCT, ItemNotFoundError, TrackerRepository
from pricetracker.results import ErrorKind, ExtractionResult, ScraperMode
from pricetracker.tracker import update_item


class RepositoryTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = {
            "storage": {
                "sqlite": {"database_path": str(Path(self.tmp.name) / "prices.db")},
                "exports": {"csv_path": str(Path(self.tmp.name) / "exports")},
            },
            "domains": [
                {"domain": "example.com", "selector": ".from-config", "scraper": "simple"},
                {"domain": "shop.test", "scraper": "puppeteer"},
            ],
        }
        self.engine = get_engine(self.config)
        init_db(self.engine)
        self.session = get_session_factory(self.engine)()
        self.repo = TrackerRepository(self.session)

    def tearDown(self):
        self.session.close()
        self.engine.dispose()
        self.tmp.cleanup()


class TestItems(RepositoryTestCase):
    def test_name_is_fetched_from_first_site(self):
        seen = []

        def title_fetcher(url):
            seen.append(url)
            return "Steel Kettle"

        item = self.repo.add_item(
            ["https://a.example.com/k", {"url": "https://b.example.com/k", "selector": ".p", "scraper": "simple"}],
            title_fetcher=title_fetcher,
        )

        self.assertEqual(item.name, "Steel Kettle")
        self.assertEqual(seen, ["https://a.example.com/k"])
        self.assertEqual(item.sites[1].selector, ".p")
        self.assertEqual(item.sites[1].scraper_mode, "simple")

    def test_unnamed_fallback(self):
        def broken(url):
            raise RuntimeError("no browser")

        self.assertEqual(self.repo.add_item(["https://a.example.com/x"], title_fetcher=broken).name, UNNAMED_PRODUCT)
        self.assertEqual(self.repo.add_item([]).name, UNNAMED_PRODUCT)

    def test_positions_are_appended(self):
        first = self.repo.add_item([], name="One")
        second = self.repo.add_item([], name="Two")
        self.assertEqual((first.position, second.position), (0, 1))
        self.assertEqual([i.name for i in self.repo.list_items()], ["One", "Two"])

    def test_move_item_renumbers(self):
        for name in ("One", "Two", "Three"):
            self.repo.add_item([], name=name)
        three = self.repo.list_items()[2]

        self.repo.move_item(three.id, "top")
        self.assertEqual([i.name for i in self.repo.list_items()], ["Three", "One", "Two"])

        self.repo.move_item(three.id, "down")
        items = self.repo.list_items()
        self.assertEqual([i.name for i in items], ["One", "Three", "Two"])
        self.assertEqual([i.position for i in items], [0, 1, 2])

        with self.assertRaises(ValueError):
            self.repo.move_item(three.id, "sideways")

    def test_edit_and_remove(self):
        item = self.repo.add_item(["https://a.example.com/x"], name="Old")
        item_id = item.id
        self.repo.edit_item(item_id, name="New", image_url="https://img.example.com/x.png")
        self.assertEqual(self.repo.get_item(item_id).name, "New")

        self.repo.remove_item(item_id)
        with self.assertRaises(ItemNotFoundError):
            self.repo.get_item(item_id)
        self.assertEqual(self.session.query(TrackedSite).count(), 0)

    def test_add_and_remove_site(self):
        item = self.repo.add_item(["https://a.example.com/x"], name="Lamp")
        site = self.repo.add_site(item.id, " https://b.example.com/x ", selector="#p", scraper_mode="SIMPLE")
        self.assertEqual(site.url, "https://b.example.com/x")
        self.assertEqual(site.scraper_mode, ScraperMode.SIMPLE.value)
        self.assertEqual(len(self.repo.get_item(item.id).sites), 2)

        self.repo.remove_site(item.id, site.id)
        self.assertEqual(len(self.repo.get_item(item.id).sites), 1)

        with self.assertRaises(ValueError):
            self.repo.add_site(item.id, "  ")


class TestDomainSettings(RepositoryTestCase):
    def test_seed_does_not_override_existing_rows(self):
        self.repo.upsert_domain_setting("example.com", selector=".mine", scraper_mode="auto")

        added = self.repo.seed_domain_settings(self.config)

        self.assertEqual(added, 1)
        by_domain = {s.domain: s for s in self.repo.list_domain_settings()}
        self.assertEqual(by_domain["example.com"].selector, ".mine")
        self.assertEqual(by_domain["shop.test"].scraper_mode, "puppeteer")
        self.assertEqual(self.repo.seed_domain_settings(self.config), 0)

    def test_resolution_through_stored_settings(self):
        self.repo.seed_domain_settings(self.config)
        resolved = self.repo.resolve_for_url("https://www.deals.example.com/p/1")
        self.assertEqual(resolved.selector, ".from-config")
        self.assertEqual(resolved.scraper_mode, ScraperMode.SIMPLE)

    def test_upsert_keeps_mode_when_not_given(self):
        self.repo.upsert_domain_setting("Shop.Test", scraper_mode="simple")
        setting = self.repo.upsert_domain_setting("shop.test", selector=".x")
        self.assertEqual(setting.scraper_mode, "simple")
        self.assertEqual(setting.selector, ".x")

    def test_remove_setting(self):
        self.repo.upsert_domain_setting("example.com")
        self.assertTrue(self.repo.remove_domain_setting("example.com"))
        self.assertFalse(self.repo.remove_domain_setting("example.com"))


class TestSqliteEngine(RepositoryTestCase):
    def test_foreign_keys_are_enforced(self):
        with self.engine.connect() as conn:
            self.assertEqual(conn.execute(text("PRAGMA foreign_keys")).scalar(), 1)


class TestExportHistory(RepositoryTestCase):
    def test_export_writes_history_files(self):
        item = self.repo.add_item(["https://a.example.com/x", "https://b.example.com/x"], name="Lamp")
        results = {
            "https://a.example.com/x": ExtractionResult.found(Decimal("12.00")),
            "https://b.example.com/x": ExtractionResult.failed(ErrorKind.OUT_OF_STOCK),
        }
        update_item(
            self.session,
            item,
            domain_configs=[],
            fetcher=lambda url, **kwargs: results[url],
            site_delay_ms=0,
        )

        paths = export_history(self.config)

        self.assertIn("items", paths)
        self.assertIn("site_history", paths)
        self.assertIn("item_history", paths)
        site_csv = Path(paths["site_history"]).read_text(encoding="utf-8")
        self.assertIn("https://a.example.com/x", site_csv)
        self.assertNotIn("https://b.example.com/x", site_csv)

    def test_export_with_no_data(self):
        self.assertEqual(export_history(self.config), {})


if __name__ == "__main__":
    unittest.main()
