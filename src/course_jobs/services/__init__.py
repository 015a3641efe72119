"""Collaborator interfaces: repositories, storage and notifications."""
