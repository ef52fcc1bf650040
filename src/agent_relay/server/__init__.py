"""HTTP admin surface and process startup helpers."""
