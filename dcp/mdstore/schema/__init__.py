"""
Schema catalogue: value types, field descriptors, the registry, type
conversion and field interchange documents.
"""
