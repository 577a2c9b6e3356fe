"""Admission validation, mutation and version conversion for load balancers."""