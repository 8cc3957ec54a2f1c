"""Cost heuristics choosing between the REST and Bulk transports."""

import math
from typing import Optional

from ..models.config import EngineSettings
from ..models.job import EngineChoice, PollingChoice


def suggest_query_engine(
    total_records_count: int,
    subset_records_count: int,
    number_of_subset_queries: int,
    settings: Optional[EngineSettings] = None,
) -> EngineChoice:
    """
    Choose how to fetch a subset of an entity's records.

    Candidates are running the subset queries over REST or Bulk, or fetching
    the whole entity over either transport. Fetching everything is
    penalised by the fraction of records that are not needed.
    """
    settings = settings or EngineSettings()

    if total_records_count <= 0:
        return EngineChoice(skip_api_call=True)

    subset_records_count = min(max(subset_records_count, 0), total_records_count)
    penalty = (total_records_count - subset_records_count) / total_records_count

    rest_subset_cost = number_of_subset_queries
    bulk_subset_cost = number_of_subset_queries
    rest_all_cost = math.ceil(total_records_count / settings.rest_max_records_per_call) + penalty
    bulk_all_cost = math.ceil(total_records_count / settings.bulk_max_records_per_batch) + penalty

    min_cost = min(rest_subset_cost, bulk_subset_cost, rest_all_cost, bulk_all_cost)

    if min_cost == rest_subset_cost:
        return EngineChoice(use_bulk=False, query_all=False)
    if min_cost == bulk_subset_cost:
        return EngineChoice(use_bulk=True, query_all=False)
    if min_cost == rest_all_cost:
        return EngineChoice(use_bulk=False, query_all=True)
    return EngineChoice(use_bulk=True, query_all=True)


def suggest_update_engine(
    total_records_count: int,
    settings: Optional[EngineSettings] = None,
) -> EngineChoice:
    """Choose the cheaper write transport for a number of records."""
    settings = settings or EngineSettings()

    if total_records_count <= 0:
        return EngineChoice(skip_api_call=True)

    rest_calls = math.ceil(total_records_count / settings.rest_max_records_per_batch)
    bulk_jobs = math.ceil(total_records_count / settings.bulk_max_records_per_batch)

    rest_cost = rest_calls * settings.rest_base_cost_per_call + total_records_count * settings.rest_cost_per_record
    bulk_cost = bulk_jobs * settings.bulk_base_cost_per_job + total_records_count * settings.bulk_cost_per_record

    return EngineChoice(use_bulk=rest_cost > bulk_cost)


def suggest_polling_settings(
    record_count: Optional[int] = None,
    settings: Optional[EngineSettings] = None,
) -> PollingChoice:
    """Scale the bulk job poll interval and timeout with the expected volume."""
    settings = settings or EngineSettings()

    if not record_count or record_count <= 0:
        record_count = settings.poll_record_scale_factor

    scale = math.ceil(record_count / settings.poll_record_scale_factor)
    return PollingChoice(
        poll_interval=min(settings.poll_min_interval * scale, settings.poll_max_interval),
        poll_timeout=settings.poll_max_timeout * scale,
    )
