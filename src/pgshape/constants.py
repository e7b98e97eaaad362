"""Numerical constants shared by the EM engine."""
import math

# smallest probability used when taking logs of templates
mineps = 1e-7
# diagonal loading used by robust inversions, relative to the largest diagonal
ridge = 1e-9
# relative floor on eigenvalues in the joint orthogonalisation
mineig = 1e-3
# relative tolerance of the conjugate gradient solver
cg_tol = 1e-6
# Gauss-Newton iterations used when rescaling the principal subspace
scale_iter = 50
scale_tol = 1e-8
# default lower bound threshold for the activation of the next block
lb_threshold = 1e-4
# initial scale of the random latent coordinates
latent_init_scale = 0.1
LOG_2PI = math.log(2.0 * math.pi)
# conversion factor from a FWHM to a Gaussian standard deviation
FWHM_TO_SIGMA = 1.0 / math.sqrt(8.0 * math.log(2.0))
