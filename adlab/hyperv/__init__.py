"""
Operations on the Hyper-V host: switches, installation media and VMs.
"""
