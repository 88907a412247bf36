"""deployscript: SFTP deploy engine (backup, clean, upload, then remote commands)"""
__version__ = "1.0.0"
