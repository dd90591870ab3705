"""
Async Export Module

Exports large, filtered and sorted lists to delimited text in the background.
A Celery beat task advances each job one page per tick; the finished file is
served exactly once and then deleted.
"""
