"""
Guest configuration: everything run inside the lab's VMs after setup.
"""
