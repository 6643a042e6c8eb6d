"""Tests for the plausibility guard and the update workflow."""

import sys
import tempfile
import unittest
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from pricetracker.models import ScrapeError, ScrapeRun, get_engine, get_session_factory, init_db
from pricetracker.repository import TrackerRepository
from pricetracker.results import ErrorKind, ExtractionResult, ScraperMode
from pricetracker.tracker import (
    apply_plausibility_guard,
    refresh_item_summary,
    resolve_site_settings,
    run_update,
    update_item,
)


class FakeFetcher:
    """Scripted fetch_price replacement keyed by URL."""

    def __init__(self, results):
        self.results = dict(results)
        self.calls = []

    def __call__(self, url, mode=None, selector=None, config=None, proximity_scan=False):
        self.calls.append({"url": url, "mode": mode, "selector": selector, "proximity_scan": proximity_scan})
        outcome = self.results[url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestPlausibilityGuard(unittest.TestCase):
    def test_large_drop_is_downgraded(self):
        result = apply_plausibility_guard(ExtractionResult.found(Decimal("2.00")), Decimal("20.00"))
        self.assertIsNone(result.price)
        self.assertEqual(result.error_kind, ErrorKind.OUT_OF_STOCK)
        self.assertIn("20.00", result.message)

    def test_large_rise_is_downgraded(self):
        result = apply_plausibility_guard(ExtractionResult.found(Decimal("90.00")), Decimal("50.00"), 0.7)
        self.assertEqual(result.error_kind, ErrorKind.OUT_OF_STOCK)

    def test_normal_change_passes(self):
        result = apply_plausibility_guard(ExtractionResult.found(Decimal("17.50")), Decimal("20.00"))
        self.assertEqual(result.price, Decimal("17.50"))

    def test_first_price_and_failures_pass_through(self):
        first = ExtractionResult.found(Decimal("2.00"))
        self.assertIs(apply_plausibility_guard(first, None), first)

        failed = ExtractionResult.failed(ErrorKind.BAD_STATUS, "HTTP 500")
        self.assertIs(apply_plausibility_guard(failed, Decimal("20.00")), failed)


class TrackerDatabaseTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = {
            "storage": {"sqlite": {"database_path": str(Path(self.tmp.name) / "prices.db")}},
            "tracking": {"site_delay_ms": 0, "max_change_ratio": 0.7},
            "domains": [{"domain": "beta.example.org", "selector": ".beta-price", "scraper": "simple"}],
        }
        self.engine = get_engine(self.config)
        init_db(self.engine)
        self.session = get_session_factory(self.engine)()
        self.repo = TrackerRepository(self.session)

    def tearDown(self):
        self.session.close()
        self.engine.dispose()
        self.tmp.cleanup()


class TestUpdateWorkflow(TrackerDatabaseTestCase):
    URL_A = "https://alpha.example.com/widget"
    URL_B = "https://www.beta.example.org/widget"

    def _item(self):
        return self.repo.add_item([self.URL_A, self.URL_B], name="Widget")

    def test_two_sites_one_failing(self):
        item = self._item()
        site_a, site_b = item.sites
        fetcher = FakeFetcher({
            self.URL_A: ExtractionResult.failed(ErrorKind.NO_PRICE_FOUND),
            self.URL_B: ExtractionResult.found(Decimal("15.00")),
        })

        summary = update_item(self.session, item, self.config, fetcher=fetcher, site_delay_ms=0)

        self.assertEqual(item.current_price, Decimal("15.00"))
        self.assertEqual(item.best_url, self.URL_B)
        self.assertEqual(site_a.history, [])
        self.assertIsNone(site_a.current_price)
        self.assertEqual(site_a.last_error, "no_price_found")
        self.assertEqual(site_b.history, [Decimal("15.00")])
        self.assertEqual(summary["sites_updated"], 1)
        self.assertEqual(summary["sites_failed"], 1)

    def test_best_price_and_range_over_site_histories(self):
        item = self._item()
        fetcher = FakeFetcher({
            self.URL_A: ExtractionResult.found(Decimal("25.00")),
            self.URL_B: ExtractionResult.found(Decimal("22.50")),
        })
        update_item(self.session, item, self.config, fetcher=fetcher, site_delay_ms=0)

        fetcher.results[self.URL_A] = ExtractionResult.found(Decimal("21.00"))
        fetcher.results[self.URL_B] = ExtractionResult.failed(ErrorKind.BAD_STATUS, "HTTP 503")
        update_item(self.session, item, self.config, fetcher=fetcher, site_delay_ms=0)

        self.assertEqual(item.current_price, Decimal("21.00"))
        self.assertEqual(item.best_url, self.URL_A)
        self.assertEqual(item.min_price, Decimal("21.00"))
        self.assertEqual(item.max_price, Decimal("25.00"))
        self.assertEqual(item.history, [Decimal("22.50"), Decimal("21.00")])
        self.assertEqual(len(item.history_dates), 2)

    def test_implausible_price_keeps_history(self):
        item = self.repo.add_item([self.URL_A], name="Widget")
        site = item.sites[0]
        fetcher = FakeFetcher({self.URL_A: ExtractionResult.found(Decimal("20.00"))})
        update_item(self.session, item, self.config, fetcher=fetcher, site_delay_ms=0)

        fetcher.results[self.URL_A] = ExtractionResult.found(Decimal("2.00"))
        summary = update_item(self.session, item, self.config, fetcher=fetcher, site_delay_ms=0)

        self.assertEqual(site.current_price, Decimal("20.00"))
        self.assertEqual(site.history, [Decimal("20.00")])
        self.assertEqual(site.last_error, "out_of_stock")
        self.assertEqual(summary["errors"][0]["stage"], "plausibility")

    def test_fetch_exception_does_not_block_siblings(self):
        item = self._item()
        fetcher = FakeFetcher({
            self.URL_A: RuntimeError("boom"),
            self.URL_B: ExtractionResult.found(Decimal("9.99")),
        })

        summary = update_item(self.session, item, self.config, fetcher=fetcher, site_delay_ms=0)

        self.assertEqual(item.current_price, Decimal("9.99"))
        self.assertEqual(summary["errors"][0]["error_type"], "RuntimeError")

    def test_site_and_domain_settings_resolution(self):
        self.repo.seed_domain_settings(self.config)
        item = self._item()
        site_a, site_b = item.sites
        domains = self.repo.domain_configs()

        settings_a = resolve_site_settings(site_a, domains)
        self.assertEqual((settings_a.selector, settings_a.scraper_mode), (None, ScraperMode.AUTO))
        self.assertFalse(settings_a.configured)

        settings_b = resolve_site_settings(site_b, domains)
        self.assertEqual((settings_b.selector, settings_b.scraper_mode), (".beta-price", ScraperMode.SIMPLE))
        self.assertTrue(settings_b.configured)

        site_b.selector = "#own"
        site_b.scraper_mode = "puppeteer"
        settings_b = resolve_site_settings(site_b, domains)
        self.assertEqual((settings_b.selector, settings_b.scraper_mode), ("#own", ScraperMode.PUPPETEER))
        self.assertTrue(settings_b.configured)

    def test_proximity_scan_only_for_configured_domains(self):
        self.repo.seed_domain_settings(self.config)
        item = self._item()
        fetcher = FakeFetcher({
            self.URL_A: ExtractionResult.found(Decimal("10.00")),
            self.URL_B: ExtractionResult.found(Decimal("11.00")),
        })

        update_item(self.session, item, self.config, self.repo.domain_configs(), fetcher=fetcher, site_delay_ms=0)

        flags = {call["url"]: call["proximity_scan"] for call in fetcher.calls}
        self.assertEqual(flags, {self.URL_A: False, self.URL_B: True})

    def test_summary_untouched_without_prices(self):
        item = self._item()
        self.assertFalse(refresh_item_summary(self.session, item))
        self.assertIsNone(item.current_price)
        self.assertEqual(item.history, [])


class TestRunUpdate(TrackerDatabaseTestCase):
    def test_run_records_counters_and_errors(self):
        self.repo.add_item(["https://alpha.example.com/a", "https://www.beta.example.org/a"], name="A")
        self.repo.add_item(["https://alpha.example.com/b"], name="B")
        self.session.close()

        fetcher = FakeFetcher({
            "https://alpha.example.com/a": ExtractionResult.found(Decimal("15.00")),
            "https://www.beta.example.org/a": ExtractionResult.failed(ErrorKind.NO_PRICE_FOUND),
            "https://alpha.example.com/b": ExtractionResult.found(Decimal("3.25")),
        })

        results = run_update(config=self.config, fetcher=fetcher)

        self.assertEqual(results["status"], "partial")
        self.assertEqual(results["items_planned"], 2)
        self.assertEqual(results["sites_updated"], 2)
        self.assertEqual(results["sites_failed"], 1)
        beta_call = next(c for c in fetcher.calls if "beta" in c["url"])
        self.assertEqual(beta_call["selector"], ".beta-price")
        self.assertEqual(beta_call["mode"], ScraperMode.SIMPLE)

        session = get_session_factory(self.engine)()
        try:
            run = session.query(ScrapeRun).one()
            self.assertEqual(run.status, "partial")
            self.assertIsNotNone(run.completed_at)
            errors = session.query(ScrapeError).all()
            self.assertEqual(len(errors), 1)
            self.assertEqual(errors[0].error_type, "no_price_found")
            self.assertEqual(errors[0].url, "https://www.beta.example.org/a")

            items = TrackerRepository(session).list_items()
            self.assertEqual([i.current_price for i in items], [Decimal("15.00"), Decimal("3.25")])
        finally:
            session.close()

    def test_single_item_run(self):
        item = self.repo.add_item(["https://alpha.example.com/a"], name="A")
        other = self.repo.add_item(["https://alpha.example.com/b"], name="B")
        item_id, other_id = item.id, other.id
        self.session.close()

        fetcher = FakeFetcher({"https://alpha.example.com/a": ExtractionResult.found(Decimal("8.00"))})
        results = run_update(config=self.config, item_id=item_id, fetcher=fetcher)

        self.assertEqual(results["status"], "completed")
        self.assertEqual(len(fetcher.calls), 1)

        session = get_session_factory(self.engine)()
        try:
            repo = TrackerRepository(session)
            self.assertEqual(repo.get_item(item_id).current_price, Decimal("8.00"))
            self.assertIsNone(repo.get_item(other_id).current_price)
        finally:
            session.close()


if __name__ == "__main__":
    unittest.main()
