"""
Records and their values: value objects, storage strategies, privilege
sets, permission evaluation and deferred housekeeping.
"""
