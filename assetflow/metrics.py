# assetflow/metrics.py
from prometheus_client import Counter

jobs_enqueued_total = Counter(
    "assetflow_jobs_enqueued_total", "Processing jobs enqueued", ["asset_type"]
)
retries_total = Counter(
    "assetflow_retries_total", "Retry requests by outcome", ["asset_type", "outcome"]
)
pipeline_runs_total = Counter(
    "assetflow_pipeline_runs_total", "Pipeline runs by final status", ["asset_type", "status"]
)
degraded_steps_total = Counter(
    "assetflow_degraded_steps_total", "Best-effort steps that fell back to a default", ["step"]
)
