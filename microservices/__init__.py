"""isA microservices"""
