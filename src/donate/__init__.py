"""Donation and subscription processing with perk redemption."""
