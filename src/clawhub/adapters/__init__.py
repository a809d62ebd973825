"""Adapters: concrete compute providers behind InstanceProvider."""
