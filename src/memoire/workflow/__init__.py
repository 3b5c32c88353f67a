"""Approval workflow engine for the mémoire lifecycle.

Each submodule owns the state machine of one entity (themes, documents,
meeting reports, plagiarism checks, jury decisions, archives) plus the shared pieces:
the role gate, the assignment resolver, the notification dispatcher and the
transactional store helpers.  Submodules are imported explicitly by callers;
nothing is re-exported here to keep ``models`` -> ``gate`` imports acyclic.
"""
