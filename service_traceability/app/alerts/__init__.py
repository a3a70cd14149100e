"""
Alert fan-out package.

The broadcaster keeps the live subscriber set and delivers AlertEvents
to it without persistence or replay.
"""
