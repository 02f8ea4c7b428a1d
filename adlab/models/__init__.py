"""
Data models.

Modules:
- lab: Lab definition (switches, images, domain, machines, services)
"""
