"""Core detection, scanning and key management logic for CyberKey."""
