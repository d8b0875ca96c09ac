"""JSON API consumed by the browser dashboard's chart widgets."""
