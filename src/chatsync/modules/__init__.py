"""Feature modules for :mod:`chatsync`."""
