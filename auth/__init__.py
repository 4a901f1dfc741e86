"""auth/ -- Authentication package for Lattice.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, cmdb/, graph/, cache/, or audit/ (except
auth/dependencies.py, which builds the cmdb Principal for the write path).
api/ imports from auth/, not the other way around.
"""
