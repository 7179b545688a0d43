"""
Integration layer between the receipt / membership-letter generator and a
managed backend.

This package wraps table storage, bucket storage and a simple username /
password session behind gateway abstractions so the UI can call a small set
of named operations (config, serials, receipts, files, auth) over HTTP.
"""
