"""auth/ -- Credential and authentication-flow package for SafeVault.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
core/ never imports from auth/. main.py imports from both.
"""
