"""
hanziflow - Flashcard Enrichment Pipeline

Takes a minimally specified flashcard entity (a Traditional Chinese text key)
and fills it in through a sequence of rate-limited enrichment stages:
dictionary lookup, AI interpretation, complexity analysis, confusion analysis,
image and audio generation, and learning insights.

Basic usage:
    from hanziflow.db.connection import Database
    from hanziflow.jobs import JobStore, JobPriority
    from hanziflow.enrichment import submit_card_enrichment

    db = Database()
    store = JobStore(db)
    job_id = submit_card_enrichment(store, card_id, priority=JobPriority.USER_INITIATED)

    # Poll progress
    print(store.get_status(job_id))
"""

__version__ = "0.3.0"
