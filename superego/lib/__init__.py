"""Core library: namespaces, state, transcript cursor, locking, mailbox, journal."""
