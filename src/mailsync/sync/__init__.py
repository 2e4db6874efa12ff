"""Mailbox synchronization engine.

Import from the submodules directly (``mailsync.sync.connection_manager``,
``mailsync.sync.pipeline`` ...); the storage and collaborator packages import
``mailsync.sync.models``, so this package does not re-export them.
"""
