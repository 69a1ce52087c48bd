"""
Timesheet service package.

A FastAPI application that records daily meal completion, notes and meal
videos, backed either by a SQL table plus an S3 bucket or by a JSON file
plus a local video directory.
"""
