"""Raft peer protocol state, log, persistence, messages and settings."""