"""Heuristic structural audit of HTML tables embedded in exam questions.

Submodules:
  patterns     -- compiled regex patterns and keyword tuples
  markup       -- BeautifulSoup helpers (top-level tables, own rows, cell content)
  classifiers  -- LaTeX balance, generic-header and financial-table helpers
  schema       -- Issue / AuditReport Pydantic models
  grid         -- logical grid reconstruction honoring rowspan/colspan
  detector     -- per-table rule battery producing severity-tagged issues
  coordinator  -- document -> field -> table iteration and statistics
"""
