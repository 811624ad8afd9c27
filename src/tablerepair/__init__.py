"""Audit and AI-assisted repair of HTML tables embedded in exam-question JSON.

Subpackages:
  audit   -- grid reconstruction, issue detection, document-level audit
  repair  -- prompts, providers, and the bounded-retry repair protocol
  jobs    -- task/batch state machine, queue, workers, output reconstruction
"""

__version__ = "0.1.0"
