"""
SQLite persistence: the database wrapper, vocabulary terms and attachments.
"""
