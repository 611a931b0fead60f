"""Credential acquisition for the CRM tenant."""

from src.crm_bridge.auth.credentials import AzureAdCredentialProvider, CredentialProvider

__all__ = ["AzureAdCredentialProvider", "CredentialProvider"]
