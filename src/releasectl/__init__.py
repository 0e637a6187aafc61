"""releasectl - build, ship and verify Node.js releases on remote hosts."""

__version__ = "0.1.0"
__author__ = "releasectl contributors"
