__version__ = "0.1.0"
__description__ = (
    "Kubernetes controller that suspends, resumes and finally deletes the resources of tenant namespaces "
    "according to their billing debt status"
)
