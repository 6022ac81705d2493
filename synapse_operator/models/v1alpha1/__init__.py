from .synapse import *
