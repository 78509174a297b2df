from .__about__ import __title__, __version__
