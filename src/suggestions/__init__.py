"""Suggestion sink for pipeline outputs.

Processors write related-thread lists, duplicate candidates, label picks and
status changes as suggestions that agents accept or dismiss later.

Modules:
    models: Suggestion and SuggestionType
    repository: Firestore upsert keyed by (type, thread, related thread)
"""
