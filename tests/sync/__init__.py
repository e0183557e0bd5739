"""
Test suite for the synchronization pipeline.

Covers the change watcher, classifier, consistency checker, event router,
sync transactions and the conflict arbiter.
"""
