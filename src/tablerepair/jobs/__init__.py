"""Batch processing: task state machine, queue, workers and output reconstruction.

Submodules:
  models   -- Batch / Task / ProcessLog Pydantic records and status enums
  store    -- persistence contract and the in-memory store
  queue    -- keyed job queue, sliding-window rate limiter, worker pool
  worker   -- job handler driving one task through the repair protocol
  batches  -- intake, cancellation, progress and listings
  output   -- put repaired tables back and write the output document
"""
