"""Travel Explorer backend."""
