"""
Multi-stage content pipeline.

    ingest ──▶ extract ×N ──▶ embed ──▶ segment ──▶ analyze ×M ──▶ quiz ×M ──▶ aggregate

- context:    per-invocation dependencies (sessions, clients, job store)
- dispatcher: claim, run, record outcome, evaluate gates
- gates:      fan-in readiness checks between stages, stalled-unit sweep
- handlers:   one StageHandler per job type
- ingest:     source file registration and extract enqueue
- outputs:    stage outputs and sections in reading order
"""

from studyflow.services.pipeline.context import PipelineContext, build_pipeline_context
from studyflow.services.pipeline.dispatcher import make_worker_id, run_claimed_job, run_queue_tick
from studyflow.services.pipeline.gates import dedupe_key, evaluate_gate, resume_stalled_units
from studyflow.services.pipeline.ingest import ingest_files
from studyflow.services.pipeline.results import Error, NeedsFallback, StageResult, Success

__all__ = [
    "PipelineContext",
    "build_pipeline_context",
    "make_worker_id",
    "run_claimed_job",
    "run_queue_tick",
    "dedupe_key",
    "evaluate_gate",
    "resume_stalled_units",
    "ingest_files",
    "Success",
    "NeedsFallback",
    "Error",
    "StageResult",
]
