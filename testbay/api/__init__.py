"""HTTP surface serving stored task reports."""
