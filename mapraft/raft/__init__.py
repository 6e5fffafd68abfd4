"""Raft consensus peer, its messages, and its interface and in-memory storage."""