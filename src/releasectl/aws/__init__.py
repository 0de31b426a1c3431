"""
AWS integrations: client management and the ECR artifact publisher.
"""
