"""
Content Processors Package

Pure(ish) building blocks the stage handlers compose.

Modules:
--------
- chunker: Text normalization, overlap-aware sectioning, paragraph batching
- embedder: Embedding provider and the idempotent embedding generator
- focus: Cross-modal focus matching with a dynamic similarity threshold
- retriever: Hybrid semantic + keyword section search fused by RRF
- summary_merge: Parse and reconcile batched summary markdown
- json_repair: Recover JSON from fenced or truncated model output
- pdf_text: PyMuPDF text-layer extraction
"""
