"""Convo Vault Meta information.
   Convo Vault keeps one escrowed symmetric secret per conversation
   and uses it to seal message payloads end-to-end.
"""
__title__ = 'convo_vault'
__description__ = (
   'Per-conversation secret escrow, local caching and '
   'authenticated message encryption.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2026 Convo Vault contributors'
__author__ = 'Convo Vault contributors'
__license__ = 'Apache-2.0'
