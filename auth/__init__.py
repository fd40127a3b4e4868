"""auth/ -- Authentication and authorization package for the storefront.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, shop/, payments/, support/, content/, or realtime/.
Those packages import from auth/, not the other way around.
"""
