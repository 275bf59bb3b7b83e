"""
Jobs Package

Background job definitions for the asyncio runner and the ARQ worker.
Import from the submodules; services depend on jobs.leases.
"""
