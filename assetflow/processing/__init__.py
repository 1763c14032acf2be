"""
Media processing: file typing, metadata extraction, derivatives and colour.
"""
