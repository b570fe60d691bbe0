"""Static data files bundled with the Ruta backend."""
