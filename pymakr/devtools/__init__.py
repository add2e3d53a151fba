"""Development-mode support files uploaded to the board.

``payload/`` is synced to ``<root>/_pymakr_dev`` and ``boot.dev`` is rendered
per project before being written next to it.
"""
