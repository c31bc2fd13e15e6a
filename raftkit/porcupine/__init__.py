"""Histories, events and sequential models for linearizability checking."""