"""
bookscan: turns photographed or filmed book pages into chaptered text.
"""

__version__ = "0.1.0"
