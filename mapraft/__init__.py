"""MapReduce coordinator and worker, sample applications, and a Raft peer."""

__version__ = "0.1.0"