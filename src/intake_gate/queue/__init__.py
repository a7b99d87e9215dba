"""Durable intake queue with multi-window admission control.

A dispatcher cycle fetches new upstream items, persists them before moving
the fetch cursor, then drains as many queued items as the current quota
windows allow. Everything lives in one SQLite file; concurrent processes
coordinate through single-statement counter updates and conditional
status transitions rather than a broker.
"""
