"""Small toolchains that run inside the sandbox as ``python -m`` modules."""
