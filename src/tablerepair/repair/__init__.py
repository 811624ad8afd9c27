"""AI-assisted repair of a single broken table.

Submodules:
  schema     -- TokenUsage / RepairContext / RepairResult Pydantic models
  analysis   -- structural diagnosis, target columns, instruction variant
  prompts    -- initial and corrective prompt builders
  providers  -- key pool, primary (Gemini) and pool (OpenRouter) providers
  protocol   -- bounded repair loop with provider fallback and validation
"""
