"""NIC inventory, kernel driver lifecycle and MAC flashing."""
