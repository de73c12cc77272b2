"""Data subpackage: synthetic generators, preprocessing, fold assignment, and loaders."""

from .generators import generate_synthetic, SyntheticConfig, SyntheticDataset, make_groups
from .preprocess import ColumnMoments, genotype_moments, standardize_X, maf_weights
from .splits import random_fold_assignment, kfold_assignment, validate_folds, fold_sizes
from .loaders import load_dataset, LoadedDataset, GroupMap
