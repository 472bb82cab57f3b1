"""OpenStax collection import: archive decoding and content transformation."""
