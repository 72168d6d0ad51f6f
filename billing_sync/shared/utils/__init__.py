"""
Utilidades puras (sin I/O) compartidas por el pipeline.
"""
