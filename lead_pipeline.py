#!/usr/bin/env python3
"""
Lead Enrichment Pipeline
========================

End-to-end flow for one request:

1. Build the structured people search (location resolved to a geo id through
   the geo store, discovery strategies on a miss).
2. Run the search and harvest any self-reported geo ids from the results.
3. Post-filter leads whose self-reported location contradicts the request.
4. Enrich the surviving leads with checkpoints, under per-provider admission
   control.

Maintenance commands (geo stats/export, usage status, cooldown resume and the
compliance scrub) share the same wiring.
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import os
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from enrichment import CheckpointStore, EnrichmentOrchestrator, EnrichmentResult, LeadRecord
from geo_store import GeoIdStore
from lead_validator import LeadValidator, ValidationPolicy
from location_resolver import (
    DiscoveryStrategy,
    JsonToUrlDiscovery,
    LocationResolver,
    ProfileSearchDiscovery,
    SuggestionApiDiscovery,
    SuggestionClient,
)
from pipeline_core import (
    AdmissionDenied,
    Config,
    DurableTable,
    JsonFileTable,
    PipelineError,
    ProviderError,
    _load_env_file,
    utc_now_iso,
)
from providers import ComplianceRegistryClient, PeopleDataClient, PhoneIntelligenceClient
from search_builder import SearchClient, SearchRequestBuilder
from usage_governor import UsageGovernor
from zip_lookup import ZipLookup

CSV_FIELDS = [
    "name",
    "title",
    "company",
    "location",
    "city",
    "state",
    "profile_url",
    "email",
    "phone",
    "zip_code",
    "age",
    "date_of_birth",
    "income",
    "line_type",
    "carrier",
    "dnc_status",
    "can_contact",
    "enriched",
    "checkpoint",
    "unknown_fields",
]


class LeadPipeline:
    """Wires the stores, governor, resolver and clients for one data directory."""

    def __init__(
        self,
        config: Config,
        *,
        geo_table: Optional[DurableTable] = None,
        usage_table: Optional[DurableTable] = None,
        checkpoint_table: Optional[DurableTable] = None,
        strategies: Optional[List[DiscoveryStrategy]] = None,
        search_client: Optional[SearchClient] = None,
        company_lookup: Optional[SuggestionClient] = None,
        industry_lookup: Optional[SuggestionClient] = None,
        people: Optional[PeopleDataClient] = None,
        phone_intel: Optional[PhoneIntelligenceClient] = None,
        compliance: Optional[ComplianceRegistryClient] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        config.validate()
        self.config = config
        policy = config.retry_policy()

        self.geo_store = GeoIdStore(geo_table if geo_table is not None else JsonFileTable(config.table_path("geo"), name="geo"))
        self.geo_store.seed_static(path=Path(config.geo_static_file) if config.geo_static_file else None)

        self.governor = UsageGovernor.from_config(
            config,
            usage_table if usage_table is not None else JsonFileTable(config.table_path("usage"), name="usage"),
            clock=clock,
            sleep=sleep,
        )
        self.checkpoints = CheckpointStore(
            checkpoint_table
            if checkpoint_table is not None
            else JsonFileTable(config.table_path("checkpoints"), name="checkpoints")
        )

        if strategies is None:
            strategies = self._default_strategies(policy)
        self.resolver = LocationResolver(self.geo_store, strategies, self.governor)

        if company_lookup is None and config.company_suggestions_url and config.rapidapi_key:
            company_lookup = SuggestionClient(
                config.company_suggestions_url, config.rapidapi_key, timeout=config.request_timeout, policy=policy
            )
        if industry_lookup is None and config.industry_suggestions_url and config.rapidapi_key:
            industry_lookup = SuggestionClient(
                config.industry_suggestions_url, config.rapidapi_key, timeout=config.request_timeout, policy=policy
            )
        self.builder = SearchRequestBuilder(
            self.resolver,
            company_lookup=company_lookup,
            industry_lookup=industry_lookup,
            governor=self.governor,
            allow_discovery=config.location_discovery_enabled,
        )
        self.search_client = search_client or SearchClient(
            config.search_api_url,
            config.rapidapi_key,
            timeout=config.request_timeout,
            policy=policy,
            governor=self.governor,
        )
        self.validator = LeadValidator(
            ValidationPolicy(
                accept_medium=config.validator_accept_medium,
                min_substring_length=config.validator_min_substring_length,
            )
        )

        if people is None and config.rapidapi_key:
            people = PeopleDataClient.from_config(config)
        if phone_intel is None and config.phone_intel_api_key:
            phone_intel = PhoneIntelligenceClient.from_config(config)
        if compliance is None and config.compliance_agent_number:
            compliance = ComplianceRegistryClient.from_config(config)
        self.orchestrator = EnrichmentOrchestrator(
            self.governor,
            self.checkpoints,
            people=people,
            phone_intel=phone_intel,
            compliance=compliance,
            zip_lookup=ZipLookup(Path(config.zip_table_file) if config.zip_table_file else None),
            concurrency=config.enrichment_concurrency,
        )
        self.last_run_id: Optional[str] = None
        self.last_run_dir: Optional[Path] = None

    def _default_strategies(self, policy) -> List[DiscoveryStrategy]:
        config = self.config
        if not config.location_discovery_enabled or not config.rapidapi_key:
            logging.info("Location discovery disabled; unresolved locations fall back to keywords")
            return []
        strategies: List[DiscoveryStrategy] = []
        if config.location_suggestions_url:
            strategies.append(
                SuggestionApiDiscovery(
                    SuggestionClient(
                        config.location_suggestions_url,
                        config.rapidapi_key,
                        timeout=config.request_timeout,
                        policy=policy,
                    )
                )
            )
        if config.json_to_url_endpoint:
            strategies.append(
                JsonToUrlDiscovery(
                    config.json_to_url_endpoint, config.rapidapi_key, timeout=config.request_timeout, policy=policy
                )
            )
        if config.profile_search_url:
            strategies.append(
                ProfileSearchDiscovery(
                    config.profile_search_url, config.rapidapi_key, timeout=config.request_timeout, policy=policy
                )
            )
        return strategies

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    def run(self, params: Dict[str, Any], *, max_pages: Optional[int] = None) -> Dict[str, Any]:
        """Search, validate and enrich; writes ``runs/<run_id>/`` artifacts."""
        run_id = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:6]
        self.last_run_id = run_id
        run_dir = self.config.data_dir / "runs" / run_id
        self.last_run_dir = run_dir
        run_dir.mkdir(parents=True, exist_ok=True)

        fh = logging.FileHandler(str(run_dir / "run.log"))
        fh.setLevel(logging.INFO)
        fh.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
        logging.getLogger().addHandler(fh)
        try:
            result = self._run(run_id, params, max_pages or self.config.search_max_pages)
            result["run_dir"] = str(run_dir)
            self._write_outputs(run_dir, result)
            return result
        finally:
            logging.getLogger().removeHandler(fh)
            fh.close()

    def _run(self, run_id: str, params: Dict[str, Any], max_pages: int) -> Dict[str, Any]:
        logging.info("Starting pipeline run %s", run_id)
        request = self.builder.build(params)
        location_info = None
        if request.requested_location:
            resolved = request.resolved_location
            location_info = {
                "requested": request.requested_location,
                "location_id": resolved.location_id if resolved else None,
                "display_name": resolved.display_name if resolved else None,
                "source": resolved.source.value if resolved else None,
            }
            logging.info(
                "Location %r -> %s",
                request.requested_location,
                resolved.location_id if resolved else "unresolved (keyword search)",
            )

        summary: Dict[str, Any] = {
            "run_id": run_id,
            "started_at": utc_now_iso(),
            "request": {
                "filters": request.filter_types(),
                "keywords": request.keywords,
                "location": location_info,
            },
        }

        try:
            raw_leads = self.search_client.search_all(request, max_pages=max_pages)
        except (AdmissionDenied, ProviderError) as exc:
            logging.error("Search failed: %s", exc)
            summary["error"] = f"Search failed: {exc}"
            summary["results"] = []
            return summary

        self.resolver.extract_from_records(raw_leads)

        if request.requested_location:
            filtered = self.validator.filter_batch(raw_leads, request.requested_location)
            kept = filtered.kept
            summary["filter"] = filtered.stats
        else:
            kept = raw_leads
            summary["filter"] = {"total": len(raw_leads), "kept": len(raw_leads), "removed": 0, "removal_rate": 0.0}

        leads = [LeadRecord.from_dict(item) for item in kept]
        job = self.orchestrator.run_batch(leads, job_id=run_id)
        summary["enrichment"] = job.summary
        summary["enrichment"]["filtered_out"] = summary["filter"]["removed"]
        summary["warnings"] = job.warnings
        summary["resolver"] = dict(self.resolver.metrics)
        summary["results"] = [result.to_row() for result in job.results]
        summary["finished_at"] = utc_now_iso()
        logging.info(
            "Run %s finished: %d searched, %d kept, %d enriched",
            run_id,
            len(raw_leads),
            len(kept),
            job.summary.get("enriched", 0),
        )
        return summary

    def _write_outputs(self, run_dir: Path, result: Dict[str, Any]) -> None:
        with open(run_dir / "results.json", "w", encoding="utf-8") as handle:
            json.dump(result, handle, indent=2, default=str)
        rows = result.get("results") or []
        with open(run_dir / "leads.csv", "w", encoding="utf-8", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=CSV_FIELDS, extrasaction="ignore")
            writer.writeheader()
            writer.writerows(rows)
        logging.info("Wrote %d leads to %s", len(rows), run_dir)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def scrub_file(self, path: Path, *, recheck: bool = False) -> Dict[str, Any]:
        """DNC-scrub the leads listed in a results file (run output or plain list)."""
        try:
            with open(path, "r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise PipelineError(f"Cannot read leads file {path}: {exc}") from exc
        rows = payload.get("results", []) if isinstance(payload, dict) else payload
        if not isinstance(rows, list):
            raise PipelineError(f"Leads file {path} has no list of leads")

        results: List[EnrichmentResult] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            lead = LeadRecord.from_dict(row)
            result = self.checkpoints.load(lead.identity)
            if result is None:
                result = EnrichmentResult.start(lead)
                result.phone = lead.phone
            results.append(result)
        summary = self.orchestrator.scrub_batch(results, recheck=recheck)
        summary["results"] = [result.to_row() for result in results]
        return summary

    def geo_stats(self) -> Dict[str, Any]:
        return self.geo_store.stats()

    def geo_export(self, path: Path) -> int:
        return self.geo_store.export_csv(path)

    def usage_status(self) -> Dict[str, Any]:
        return self.governor.status()

    def resume_provider(self, provider: str) -> Dict[str, Any]:
        self.governor.resume(provider)
        return self.governor.status(provider)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Location-targeted lead search and enrichment pipeline")
    parser.add_argument("--location", help='Free-form location, e.g. "Austin, TX" or "North Carolina"')
    parser.add_argument("--title", help="Job title keywords")
    parser.add_argument("--first-name", dest="first_name", help="First name keyword")
    parser.add_argument("--last-name", dest="last_name", help="Last name keyword")
    parser.add_argument("--company", help="Current company name")
    parser.add_argument("--industry", help="Industry name")
    parser.add_argument("--keywords", help="Additional free-text keywords")
    parser.add_argument(
        "--changed-jobs",
        dest="changed_jobs",
        action="store_true",
        help="Only people who changed jobs in the last 90 days",
    )
    parser.add_argument("--headcount-min", dest="headcount_min", type=int, help="Minimum company headcount")
    parser.add_argument("--headcount-max", dest="headcount_max", type=int, help="Maximum company headcount")
    parser.add_argument("--page", type=int, default=1, help="First results page")
    parser.add_argument("--pages", type=int, help="Maximum result pages to fetch (defaults to SEARCH_MAX_PAGES)")
    parser.add_argument("--concurrency", type=int, help="Override ENRICHMENT_CONCURRENCY")
    parser.add_argument(
        "--no-discovery",
        dest="no_discovery",
        action="store_true",
        help="Never call discovery strategies; unresolved locations become keywords",
    )
    parser.add_argument("--geo-stats", dest="geo_stats", action="store_true", help="Print geo store statistics and exit")
    parser.add_argument("--geo-export", dest="geo_export", metavar="PATH", help="Export the geo store to CSV and exit")
    parser.add_argument(
        "--usage-status", dest="usage_status", action="store_true", help="Print provider usage/cooldown and exit"
    )
    parser.add_argument(
        "--resume-provider", dest="resume_provider", metavar="NAME", help="Clear a provider's cooldown and exit"
    )
    parser.add_argument("--scrub", metavar="FILE", help="DNC-scrub the leads in a results JSON file and exit")
    parser.add_argument("--recheck", action="store_true", help="With --scrub, re-check leads already scrubbed")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--output",
        help="Optional path to write JSON results (defaults to stdout only)",
    )
    return parser


def _search_params(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "location": args.location,
        "title_keywords": args.title,
        "first_name": args.first_name,
        "last_name": args.last_name,
        "current_company": args.company,
        "industry": args.industry,
        "keywords": args.keywords,
        "changed_jobs_90_days": args.changed_jobs,
        "company_headcount_min": args.headcount_min,
        "company_headcount_max": args.headcount_max,
        "page": args.page,
    }


def _dispatch(pipeline: LeadPipeline, args: argparse.Namespace) -> Dict[str, Any]:
    if args.geo_stats:
        return pipeline.geo_stats()
    if args.geo_export:
        count = pipeline.geo_export(Path(args.geo_export))
        return {"exported": count, "path": args.geo_export}
    if args.usage_status:
        return pipeline.usage_status()
    if args.resume_provider:
        return pipeline.resume_provider(args.resume_provider)
    if args.scrub:
        return pipeline.scrub_file(Path(args.scrub), recheck=args.recheck)
    return pipeline.run(_search_params(args), max_pages=args.pages)


def main(argv: Optional[List[str]] = None) -> int:
    _load_env_file()
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )

    maintenance = args.geo_stats or args.geo_export or args.usage_status or args.resume_provider or args.scrub
    if not maintenance and not any(
        (args.location, args.title, args.company, args.industry, args.keywords, args.first_name, args.last_name)
    ):
        parser.error("a search needs at least one of --location, --title, --company, --industry, --keywords or a name")

    try:
        config = Config()
        if args.concurrency is not None:
            config.enrichment_concurrency = args.concurrency
        if args.no_discovery:
            config.location_discovery_enabled = False
        pipeline = LeadPipeline(config)
        result = _dispatch(pipeline, args)
    except Exception as exc:  # pylint: disable=broad-except
        logging.error("Fatal error: %s", exc)
        return 1

    output_json = json.dumps(result, indent=2, default=str)
    print(output_json)

    if args.output:
        with open(args.output, "w", encoding="utf-8") as handle:
            handle.write(output_json)
        logging.info("Wrote results to %s", args.output)

    return 0


if __name__ == "__main__":
    sys.exit(main())
