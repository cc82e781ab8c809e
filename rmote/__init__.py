"""rmote: mirror a local directory tree to a remote host over SFTP"""

__version__ = "0.1.0"
