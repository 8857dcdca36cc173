"""Quiz-guided reading backend: article scraping, LLM question generation, per-user reading queue."""

__version__ = "0.1.0"
