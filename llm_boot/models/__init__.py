"""Exceptions and the llama.cpp engine bindings."""
