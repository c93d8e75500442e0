"""Firmware-resident identity: UEFI variables, FRU EEPROM, boot entries."""
